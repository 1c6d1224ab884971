"""Test configuration."""
import os
import tempfile
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete
from sqlalchemy.orm import Session

_WORK_DIR = Path(tempfile.mkdtemp(prefix="auditlog-tests-"))

os.environ.setdefault("DATABASE_URL", "sqlite:///./auditlog_test.db")
os.environ.setdefault("API_KEY", "test-secret-key")
os.environ.setdefault("AUDIT_ENV", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")
os.environ.setdefault("PSEUDONYMIZATION_SALT", "test-salt")
os.environ.setdefault("BLOB_STORAGE_ROOT", str(_WORK_DIR / "blobs"))
os.environ.setdefault("EXPORT_STORAGE_PATH", str(_WORK_DIR / "exports"))

from auditlog import db  # noqa: E402
from auditlog.config import get_settings  # noqa: E402
from auditlog.dependencies import (  # noqa: E402
    get_audit_service,
    get_data_protection_service,
    get_export_service,
    reset_services,
)
from auditlog.main import app  # noqa: E402
from auditlog.models import (  # noqa: E402
    ApiKey,
    ApiRole,
    AuditEventRecord,
    PseudonymizationMapping,
    SchedulerLock,
)
from auditlog.schemas.audit import AuditEvent  # noqa: E402
from auditlog.services.audit import AuditService  # noqa: E402
from auditlog.services.cache import InMemoryTTLCache  # noqa: E402
from auditlog.services.data_protection import (  # noqa: E402
    DataProtectionService,
    InMemoryPseudonymMappingStore,
    SqlPseudonymMappingStore,
)
from auditlog.services.export import ExportService  # noqa: E402
from auditlog.sinks.blob import BlobStorageSink, LocalBlobContainer  # noqa: E402
from auditlog.sinks.database import DatabaseSink  # noqa: E402
from auditlog.utils.apikey import hash_key  # noqa: E402

DB_PATH = Path("./auditlog_test.db")
TABLES = (AuditEventRecord, PseudonymizationMapping, ApiKey, SchedulerLock)


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# Fresh schema per session, built by Alembic only.
if DB_PATH.exists():
    DB_PATH.unlink()
_run_migrations()


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def session_factory() -> Callable[[], Session]:
    return db.get_sessionmaker()


@pytest.fixture
def db_session(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clean_tables(session_factory) -> Iterator[None]:
    yield
    with session_factory() as session:
        for table in TABLES:
            session.execute(delete(table))
        session.commit()
    reset_services()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def protection(session_factory) -> DataProtectionService:
    settings = get_settings()
    return DataProtectionService(
        SqlPseudonymMappingStore(session_factory),
        salt="test-salt",
        application_name="auditlog-tests",
        environment="test",
        always_pseudonymize=settings.ALWAYS_PSEUDONYMIZE_FIELDS,
        never_pseudonymize=settings.NEVER_PSEUDONYMIZE_FIELDS,
    )


@pytest.fixture
def memory_protection() -> DataProtectionService:
    settings = get_settings()
    return DataProtectionService(
        InMemoryPseudonymMappingStore(),
        salt="test-salt",
        application_name="auditlog-tests",
        always_pseudonymize=settings.ALWAYS_PSEUDONYMIZE_FIELDS,
        never_pseudonymize=settings.NEVER_PSEUDONYMIZE_FIELDS,
    )


@pytest.fixture
def database_sink(session_factory) -> DatabaseSink:
    return DatabaseSink(session_factory, max_retention=timedelta(days=30))


@pytest.fixture
def blob_container(tmp_path) -> LocalBlobContainer:
    return LocalBlobContainer(tmp_path / "blobs", "audit-logs")


@pytest.fixture
def blob_sink(blob_container, protection) -> BlobStorageSink:
    return BlobStorageSink(blob_container, verifier=protection.verify_event)


@pytest.fixture
def audit_service(database_sink, blob_sink, protection) -> AuditService:
    return AuditService(
        [database_sink, blob_sink],
        protection=protection,
        cache=InMemoryTTLCache(timedelta(minutes=15)),
        archive_batch_size=2,
    )


@pytest.fixture
def export_service(audit_service, protection, tmp_path) -> ExportService:
    return ExportService(audit_service, protection, storage_path=tmp_path / "exports")


@pytest.fixture
def make_event() -> Callable[..., AuditEvent]:
    def _factory(**overrides) -> AuditEvent:
        values = {
            "user_id": "user-1",
            "action_type": "ViewRecord",
            "target_resource": "customer/1",
            "ip_address": "10.0.0.1",
            "session_id": "sess-1",
            "status": "Success",
        }
        values.update(overrides)
        return AuditEvent(**values)

    return _factory


@pytest.fixture
def override_services(audit_service, export_service, protection) -> Iterator[None]:
    app.dependency_overrides[get_audit_service] = lambda: audit_service
    app.dependency_overrides[get_export_service] = lambda: export_service
    app.dependency_overrides[get_data_protection_service] = lambda: protection
    yield
    app.dependency_overrides.pop(get_audit_service, None)
    app.dependency_overrides.pop(get_export_service, None)
    app.dependency_overrides.pop(get_data_protection_service, None)


@pytest.fixture
async def client(override_services) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., ApiKey]:
    def _factory(
        name: str,
        key: str,
        role: ApiRole = ApiRole.auditor,
        is_active: bool = True,
        expires_at: datetime | None = None,
    ) -> ApiKey:
        api_key = ApiKey(
            name=name,
            prefix="test_" + role.value[:10],
            key_hash=hash_key(key),
            role=role,
            is_active=is_active,
            expires_at=expires_at,
        )
        db_session.add(api_key)
        db_session.commit()
        db_session.refresh(api_key)
        return api_key

    return _factory


def _headers_for(make_api_key: Callable[..., ApiKey], role: ApiRole) -> dict[str, str]:
    token = f"{role.value}-{uuid4().hex}"
    make_api_key(name=f"{role.value}-{uuid4().hex}", key=token, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(make_api_key) -> dict[str, str]:
    return _headers_for(make_api_key, ApiRole.admin)


@pytest.fixture
def compliance_headers(make_api_key) -> dict[str, str]:
    return _headers_for(make_api_key, ApiRole.compliance_officer)


@pytest.fixture
def auditor_headers(make_api_key) -> dict[str, str]:
    return _headers_for(make_api_key, ApiRole.auditor)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
