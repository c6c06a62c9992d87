"""Error taxonomy shared by every engine.

Each error carries a stable ``code`` so the HTTP layer and the CLI can map
it without string matching. Field-attributable errors name the offending
input field; vault errors that concern individual records list the
affected hostnames.
"""


class CertVaultError(Exception):
    """Base class for certificate vault errors."""

    code = "error"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        hostnames: list[str] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.hostnames = list(hostnames or [])

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.field:
            body["field"] = self.field
        if self.hostnames:
            body["hostnames"] = self.hostnames
        return body


class ValidationError(CertVaultError):
    """Caller-correctable input error."""
    code = "validation_error"


class KeyRequired(CertVaultError):
    """The vault is locked and the operation needs key material."""
    code = "key_required"


class VaultLocked(KeyRequired):
    """Seal or open attempted on a locked vault session."""
    code = "vault_locked"


class WrongPassword(CertVaultError):
    """The password did not unwrap the stored master key."""
    code = "wrong_password"


class DecryptFailed(CertVaultError):
    """A sealed blob failed authentication under a verified master key."""
    code = "decrypt_failed"


class Conflict(CertVaultError):
    """The hostname (or singleton) already exists."""
    code = "conflict"


class KeyMismatch(CertVaultError):
    """Certificate public key does not match the expected key."""
    code = "key_mismatch"


class InvalidFormat(CertVaultError):
    """PEM content does not parse as the expected object."""
    code = "invalid_format"


class NotFound(CertVaultError):
    """Unknown hostname."""
    code = "not_found"


class ReadOnly(CertVaultError):
    """Mutation blocked by the record's read-only flag."""
    code = "read_only"


class PartialRotationError(CertVaultError):
    """Rotation aborted before any write; the vault is unchanged."""
    code = "partial_rotation"


class StorageError(CertVaultError):
    """Underlying persistence failure."""
    code = "storage_error"
