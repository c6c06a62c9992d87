"""Database models."""

from certvault.models.certificate import CertificateRecord
from certvault.models.config import CAConfig, CONFIG_ROW_ID
from certvault.models.history import HistoryEntry, HistoryEventType
from certvault.models.security_key import DEFAULT_LABEL, SecurityKey, SecurityKeyMethod

__all__ = [
    "CertificateRecord",
    "CAConfig",
    "CONFIG_ROW_ID",
    "DEFAULT_LABEL",
    "HistoryEntry",
    "HistoryEventType",
    "SecurityKey",
    "SecurityKeyMethod",
]
