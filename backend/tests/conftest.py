import os
import pytest
from pathlib import Path
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from jose import jwt
from unittest.mock import AsyncMock

# Load environment variables FIRST, before any leadflow imports, so Settings
# can be built when the modules are imported.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test", override=True)
os.environ.setdefault("ENVIRONMENT", "test")

from leadflow.main import app  # noqa: E402
from leadflow.config.settings import settings  # noqa: E402
from leadflow.flows.engine import FlowEngine  # noqa: E402

from fakes import FixedClock, InMemoryExecutionStore, InMemoryFlowRepository, RecordingCRM, RecordingGateway  # noqa: E402


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def repository():
    return InMemoryFlowRepository()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def crm():
    crm = RecordingCRM()
    crm.add_contact("company-1", "contact-1", name="Maria Silva", phone="5511999990001")
    crm.add_contact("company-2", "contact-foreign", name="Outro", phone="5511999990002")
    return crm


@pytest.fixture
def security_log():
    log = AsyncMock()
    return log


@pytest.fixture
def alerting():
    return AsyncMock()


@pytest.fixture
def engine(store, repository, gateway, crm, security_log, alerting, clock):
    return FlowEngine(
        store,
        repository,
        gateway,
        crm,
        security_log=security_log,
        alerting=alerting,
        max_attempts=3,
        retry_backoff_seconds=30,
        max_steps=20,
        lease_seconds=120,
        batch_size=50,
        default_transfer_message="Um atendente vai falar com você.",
        scheduler_timezone="UTC",
        clock=clock,
    )


@pytest.fixture
def auth_headers():
    def _headers(tenant_id: str = "company-1"):
        token = jwt.encode({"tenant_id": tenant_id, "sub": "operator"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API integration tests.
    It prevents the real background workers and index creation from running.
    """
    mocker.patch("leadflow.utils.queue.RedisMessageQueue.start_workers", new_callable=AsyncMock)
    mocker.patch("leadflow.utils.queue.RedisMessageQueue.stop_workers", new_callable=AsyncMock)
    mocker.patch("leadflow.utils.lifecycle.db_service.create_indexes", new_callable=AsyncMock)

    with TestClient(app) as client:
        yield client
