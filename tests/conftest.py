"""Pytest configuration and fixtures."""

import os
from dataclasses import dataclass, field
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from pydantic import BaseModel
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from voicecal.config import Settings
from voicecal.database import Base, get_db
from voicecal.main import app
from voicecal.models import ChannelNumber, VoiceJob
from voicecal.models.enums import VoiceJobStatus
from voicecal.services.audio_storage import AudioStorage
from voicecal.services.context import PipelineContext, PipelineResources, set_resources
from voicecal.services.queue import STAGE_OPTIONS, Stage, default_dedup_key

# Use test database - PostgreSQL in Docker, SQLite locally
if os.getenv("DATABASE_URL"):
    # Running in Docker - use PostgreSQL test database
    SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL").replace("/voicecal", "/voicecal_test")
else:
    # Running locally - use SQLite
    SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

connect_args = {"check_same_thread": False} if "sqlite" in SQLALCHEMY_DATABASE_URL else {}
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@dataclass
class EnqueuedStage:
    stage: Stage
    payload: BaseModel
    dedup_key: str
    countdown: float | None = None


@dataclass
class RecordingQueue:
    """In-memory stand-in for QueueManager with the same dedup semantics."""

    enqueued: list[EnqueuedStage] = field(default_factory=list)
    claimed: set[str] = field(default_factory=set)

    def enqueue(self, stage, payload, dedup_key=None, countdown=None) -> bool:
        validated = STAGE_OPTIONS[stage].payload_model.model_validate(
            payload.model_dump() if isinstance(payload, BaseModel) else payload
        )
        key = dedup_key or default_dedup_key(stage, validated.job_id)
        if key in self.claimed:
            return False
        self.claimed.add(key)
        self.enqueued.append(EnqueuedStage(stage, validated, key, countdown))
        return True

    def stages(self) -> list[Stage]:
        return [entry.stage for entry in self.enqueued]

    def last(self) -> EnqueuedStage:
        return self.enqueued[-1]

    def close(self) -> None:
        pass


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create test database schema once at the start of the test session."""
    if "postgresql" in SQLALCHEMY_DATABASE_URL:
        # For PostgreSQL, create the test database
        from sqlalchemy_utils import create_database, database_exists

        # Create test database if it doesn't exist
        if not database_exists(SQLALCHEMY_DATABASE_URL):
            create_database(SQLALCHEMY_DATABASE_URL)

    Base.metadata.create_all(bind=engine)
    yield
    # Don't drop database - just leave it for next run (each test cleans up after itself)


@pytest.fixture(scope="function", autouse=True)
def db():
    """Create a fresh database session for each test with cleanup."""
    session = TestingSessionLocal()

    yield session

    # Clean up all data after test
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    session.close()


@pytest.fixture
def settings(tmp_path):
    """Settings with no flows configured and a temp audio directory."""
    return Settings(
        database_url="sqlite:///./test.db",
        whatsapp_flow_id=None,
        audio_temp_dir=str(tmp_path / "audio"),
        default_timezone="UTC",
    )


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def resources(settings, queue):
    """Pipeline collaborators with every external client mocked."""
    whatsapp = MagicMock()
    whatsapp.send_text.return_value = "wamid.out"
    whatsapp.send_buttons.return_value = "wamid.buttons"
    whatsapp.send_list.return_value = "wamid.list"
    whatsapp.send_flow.return_value = "wamid.flow"
    calendar = MagicMock()
    calendar.get_contacts.return_value = []
    calendar.get_recent_events.return_value = []
    calendar.search_events.return_value = []
    resources = PipelineResources(
        settings=settings,
        queue=queue,
        whatsapp=whatsapp,
        transcriber=MagicMock(),
        intent_extractor=MagicMock(),
        calendar=calendar,
        storage=AudioStorage(settings.audio_temp_dir),
    )
    set_resources(resources)
    yield resources
    set_resources(None)


@pytest.fixture
def ctx(db, resources):
    """A pipeline context bound to the test session."""
    return PipelineContext.from_resources(db, resources)


@pytest.fixture
def task():
    """Stand-in for a bound Celery task on its first attempt."""
    mock_task = MagicMock()
    mock_task.request.retries = 0
    mock_task.retry.side_effect = RuntimeError("retry requested")
    return mock_task


@pytest.fixture(scope="function")
def client(db, resources):
    """Create a test client with database override."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def channel_number(db):
    """A verified sender."""
    number = ChannelNumber(
        user_id=1, phone_number="+27820000001", is_verified=True, timezone="UTC"
    )
    db.add(number)
    db.commit()
    db.refresh(number)
    return number


@pytest.fixture
def make_job(db, channel_number):
    """Factory for voice jobs in an arbitrary state."""
    counter = {"n": 0}

    def _make_job(**overrides) -> VoiceJob:
        counter["n"] += 1
        values = {
            "user_id": channel_number.user_id,
            "channel_number_id": channel_number.id,
            "inbound_message_id": f"wamid.in.{counter['n']}",
            "media_id": f"media-{counter['n']}",
            "sender_address": "27820000001",
            "mime_type": "audio/ogg",
            "status": VoiceJobStatus.RECEIVED.value,
        }
        values.update(overrides)
        job = VoiceJob(**values)
        db.add(job)
        db.commit()
        db.refresh(job)
        return job

    return _make_job
