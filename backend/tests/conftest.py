"""Test configuration and fixtures."""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set up test environment variables BEFORE importing certvault modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ARGON2_MEMORY_KIB", "1024")
os.environ.setdefault("ARGON2_ITERATIONS", "1")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.pop("BACKUP_DIR", None)

from certvault.config import get_settings
from certvault.core.config_service import config_service
from certvault.core.vault import VaultSession, key_vault
from certvault.database import Base
from certvault.models import CAConfig
from certvault.schemas.config import SetupRequest

PASSWORD = "correct horse battery staple"
OTHER_PASSWORD = "an entirely different passphrase"
SUFFIX = ".test.local"


@dataclass
class TestCA:
    """A throwaway CA that signs CSRs produced by the engine."""
    __test__ = False

    key: ec.EllipticCurvePrivateKey
    cert: x509.Certificate

    @property
    def cert_pem(self) -> str:
        return self.cert.public_bytes(serialization.Encoding.PEM).decode("ascii")

    @classmethod
    def create(cls, name: str = "Test Root CA", issuer: "TestCA | None" = None) -> "TestCA":
        key = ec.generate_private_key(ec.SECP256R1())
        subject = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
        ])
        now = datetime.now(timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer.cert.subject if issuer else subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        )
        cert = builder.sign(issuer.key if issuer else key, hashes.SHA256())
        return cls(key=key, cert=cert)

    def sign_csr(self, csr_pem: str, days: int = 365, not_after: datetime | None = None) -> str:
        csr = x509.load_pem_x509_csr(csr_pem.encode())
        return self.sign_public_key(csr.subject, csr.public_key(), days=days, not_after=not_after)

    def sign_public_key(self, subject: x509.Name, public_key, days: int = 365, not_after: datetime | None = None) -> str:
        now = datetime.now(timezone.utc)
        not_after = not_after or now + timedelta(days=days)
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(self.cert.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(min(now, not_after) - timedelta(days=1))
            .not_valid_after(not_after)
            .sign(self.key, hashes.SHA256())
        )
        return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Settings are cached; tests that patch the environment need a fresh copy."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


async def _create_session() -> AsyncGenerator[AsyncSession, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_maker() as session:
        yield session

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async for session in _create_session():
        yield session


@pytest.fixture
async def other_db_session() -> AsyncGenerator[AsyncSession, None]:
    """A second, independent installation."""
    async for session in _create_session():
        yield session


@pytest.fixture
def root_ca() -> TestCA:
    return TestCA.create()


async def setup_ca(db: AsyncSession, ca: TestCA) -> CAConfig:
    return await config_service.setup(db, SetupRequest(
        owner_email="owner@test.local",
        ca_name="Test CA",
        hostname_suffix=SUFFIX,
        default_organization="Test Org",
        default_city="Paris",
        default_state="IDF",
        default_country="FR",
        default_key_size=2048,
        ca_certificate_pem=ca.cert_pem,
    ))


@pytest.fixture
async def ca_config(db_session: AsyncSession, root_ca: TestCA) -> CAConfig:
    """A configured CA using the test root and the .test.local suffix."""
    return await setup_ca(db_session, root_ca)


@pytest.fixture
async def vault_session(db_session: AsyncSession) -> AsyncGenerator[VaultSession, None]:
    """An initialized, unlocked vault session."""
    session = VaultSession("test")
    await key_vault.unlock(db_session, session, PASSWORD)
    yield session
    session.close()


@pytest.fixture
def backup_dir(tmp_path, monkeypatch):
    """Enable local backups in a temporary directory."""
    directory = tmp_path / "backups"
    monkeypatch.setenv("BACKUP_DIR", str(directory))
    get_settings.cache_clear()
    return directory


def external_certificate(ca: TestCA, hostname: str, days: int = 365) -> tuple[str, str]:
    """A certificate issued outside the vault, with its PEM private key."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    cert_pem = ca.sign_public_key(subject, key.public_key(), days=days)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem
