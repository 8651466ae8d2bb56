import pytest
from typer.testing import CliRunner

from steadyfetch import main
from steadyfetch.core.context import create_context
from steadyfetch.domain.events.data_events import DomainEvent
from steadyfetch.domain.events.dispatcher import EventDispatcher
from steadyfetch.infrastructure.config.settings import clear_test_config
from steadyfetch.infrastructure.storage.memory_store import MemoryKeyValueStore


class FakeClock:
    """Manually advanced time source for TTL and cooldown tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Provides a FakeClock starting at a fixed timestamp."""
    return FakeClock()


@pytest.fixture
def memory_store():
    """Provides an unbounded in-process key-value store."""
    return MemoryKeyValueStore()


@pytest.fixture
def events():
    return EventDispatcher()


@pytest.fixture
def recorded_events(events):
    """Collects every event dispatched through the `events` fixture."""
    recorded = []
    events.subscribe(DomainEvent, recorded.append)
    return recorded


@pytest.fixture(scope="session")
def runner():
    """Provides a Typer CliRunner instance."""
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_test_config():
    """Drops configuration overrides set by a test."""
    yield
    clear_test_config()


@pytest.fixture
def cli_environment(mocker, tmp_path):
    """Wires the CLI against in-memory stores shared across commands.

    Returns the dict of stores so tests can seed or inspect them.
    """
    stores = {
        "session": MemoryKeyValueStore(),
        "local": MemoryKeyValueStore(),
        "offline": MemoryKeyValueStore(),
    }

    def build_context(*args, **kwargs):
        return create_context(
            tmp_path,
            session_store=stores["session"],
            local_store=stores["local"],
            offline_store=stores["offline"],
        )

    main.reset_dependencies()
    mocker.patch("steadyfetch.main.setup_logging")
    mocker.patch("steadyfetch.main.create_context", side_effect=build_context)
    yield stores
    main.reset_dependencies()
