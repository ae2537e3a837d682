import pytest
import tempfile
from pathlib import Path

from culler.api.db.database import init_db, close_db, get_db
from culler.api.schemas.media import ManagerKind
from culler.api.services.collaborators import Collaborators
from culler.api.services.exclusions import ExclusionStore
from culler.api.services.settings_service import Settings
from culler.worker.queue import DeletionQueue, MemoryQueueStore
from culler.worker.queue_processor import QueueProcessor
from culler.worker.rules.actions import ActionPipeline
from culler.worker.rules.engine import RuleEngine
from culler.api.services.run_status import RunStatusStore

from fakes import FakeClock, FakeManager, FakeMediaServer, FakeRequests, RecordingNotifier


@pytest.fixture
async def test_db(monkeypatch):
    """Create a test database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    monkeypatch.setenv("DB_PATH", db_path)

    await init_db()
    db = await get_db()

    yield db

    await close_db()
    Path(db_path).unlink(missing_ok=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def media_server():
    return FakeMediaServer()


@pytest.fixture
def tv_manager():
    return FakeManager(ManagerKind.tv)


@pytest.fixture
def movie_manager():
    return FakeManager(ManagerKind.movie)


@pytest.fixture
def requests_tracker():
    return FakeRequests()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def collaborators(media_server, tv_manager, movie_manager, requests_tracker, notifier):
    return Collaborators(
        media_server=media_server,
        managers={ManagerKind.tv: tv_manager, ManagerKind.movie: movie_manager},
        requests=requests_tracker,
        notifier=notifier,
    )


@pytest.fixture
def queue(settings, clock):
    return DeletionQueue(MemoryQueueStore(), settings, clock=clock)


@pytest.fixture
def pipeline(collaborators, queue, settings):
    return ActionPipeline(collaborators, queue, settings)


@pytest.fixture
def engine(collaborators, pipeline, queue, settings, clock, exclusions):
    """Rule engine wired to a queue processor, without a protection gate"""
    engine = RuleEngine(
        collaborators, pipeline, settings, status_store=RunStatusStore(clock=clock),
        exclusions=exclusions, clock=clock,
    )
    engine.processor = QueueProcessor(
        queue, pipeline, collaborators, settings, rule_lookup=engine.get_rule,
        exclusions=exclusions, clock=clock,
    )
    return engine


@pytest.fixture
def processor(engine):
    return engine.processor


@pytest.fixture
def exclusions(clock):
    return ExclusionStore(clock=clock)
