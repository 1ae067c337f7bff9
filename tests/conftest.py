"""Shared pytest fixtures, fakes, and test markers.

Test tiers
----------
  unit         Fast, fully offline. Vendors are replaced with
               httpx.MockTransport or in-memory fakes.

  integration  Full HTTP flow through the FastAPI app against an
               in-memory SQLite database. No real network calls.

Run specific tiers:
  pytest tests/unit
  pytest tests/integration
  pytest tests/ -v
"""

import os
import uuid

from cryptography.fernet import Fernet

# Settings are read on import, so the environment must be ready first.
os.environ.setdefault("API_SECRET_KEY", "test-secret-key-for-consult-scribe")
os.environ.setdefault("DATA_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CLEANUP_INTERVAL_SECONDS"] = "0"
os.environ["NOTE_GENERATOR"] = "transcript"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from consult_scribe.core.security import PractitionerContext, security_manager  # noqa: E402
from consult_scribe.db.database import get_db, init_db  # noqa: E402
from consult_scribe.services.audio_processor import AudioProcessor  # noqa: E402
from consult_scribe.services.lifecycle import ConsultationLifecycle  # noqa: E402
from consult_scribe.services.llm_service import TranscriptNoteGenerator  # noqa: E402
from consult_scribe.services.repository import ConsultationRepository  # noqa: E402

SAMPLE_TRANSCRIPT = (
    "Doctor: What brings you in today? "
    "Patient: I have had a dry cough and a mild fever for three days."
)


# ---------------------------------------------------------------------------
# Pytest markers
# ---------------------------------------------------------------------------

def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast offline unit tests")
    config.addinivalue_line("markers", "integration: HTTP flow tests against in-memory SQLite")


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeTranscriber:
    """Returns ``text`` or raises ``error``; remembers every audio it was given."""

    def __init__(self, text: str = SAMPLE_TRANSCRIPT, error: Exception = None):
        self.text = text
        self.error = error
        self.calls = []

    async def transcribe(self, audio):
        self.calls.append(audio)
        if self.error is not None:
            raise self.error
        return self.text


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Practitioners & services
# ---------------------------------------------------------------------------

@pytest.fixture
def practitioner() -> PractitionerContext:
    return PractitionerContext(user_id=uuid.uuid4(), email="dr.house@example.org", full_name="Dr. Gregory House")


@pytest.fixture
def other_practitioner() -> PractitionerContext:
    return PractitionerContext(user_id=uuid.uuid4(), email="dr.wilson@example.org", full_name="Dr. James Wilson")


@pytest.fixture
def repository(db_session, practitioner) -> ConsultationRepository:
    return ConsultationRepository(db_session, practitioner)


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def audio_processor(tmp_path) -> AudioProcessor:
    return AudioProcessor(storage_dir=str(tmp_path / "recordings"))


@pytest.fixture
def lifecycle(repository, transcriber, audio_processor) -> ConsultationLifecycle:
    return ConsultationLifecycle(repository, transcriber=transcriber, audio_processor=audio_processor)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
def make_auth_headers():
    def _make(practitioner: PractitionerContext) -> dict:
        token = security_manager.create_access_token({
            "sub": str(practitioner.user_id),
            "email": practitioner.email,
            "full_name": practitioner.full_name,
        })
        return {"Authorization": f"Bearer {token}"}
    return _make


@pytest.fixture
def auth_headers(make_auth_headers, practitioner) -> dict:
    return make_auth_headers(practitioner)


@pytest.fixture
def client(session_factory, transcriber, audio_processor):
    from consult_scribe import main

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    overrides = {
        get_db: override_get_db,
        main.get_session_factory: lambda: session_factory,
        main.get_transcriber_dependency: lambda: transcriber,
        main.get_audio_processor: lambda: audio_processor,
        main.get_note_generator_dependency: lambda: TranscriptNoteGenerator(),
    }
    main.app.dependency_overrides.update(overrides)
    main.limiter.reset()

    # one event loop for the whole test, so job queues outlive their request
    with TestClient(main.app) as test_client:
        yield test_client

    main.app.dependency_overrides.clear()
