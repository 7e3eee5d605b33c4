"""Pytest configuration and shared fixtures."""

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest
from click.testing import CliRunner

from bonfire.config import Config
from bonfire.database import create_tables, get_engine
from bonfire.models import AnnouncementRecord, Roster, RosterEvent
from bonfire.store import RecordStore

CHANNEL_ID = "222222222"


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_data_dir(tmp_path):
    """Provide a temporary data directory for tests."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration with temp database and fast timers."""
    return Config(
        data_dir=tmp_path,
        log_level="INFO",
        discord={"channel_id": CHANNEL_ID},
        sync={
            "watch_interval_seconds": 0.01,
            "internal_update_clear_delay_seconds": 0.05,
            "sweep_on_startup": False,
        },
    )


@pytest.fixture
def engine(test_config: Config):
    """Create a test database engine with all tables."""
    eng = get_engine(test_config)
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> RecordStore:
    return RecordStore(engine, watch_interval=0.01)


@pytest.fixture
def posted_record(store: RecordStore) -> AnnouncementRecord:
    """A posted announcement linked to roster event ``roam-1`` as message M1."""
    return store.create(
        AnnouncementRecord(
            title="Evening Roam",
            description="Meet at the north gate",
            author="Sky",
            roam_id="roam-1",
            status="posted",
            discord_message_id="M1",
            discord_channel_id=CHANNEL_ID,
            reactions={"✅": 0},
        )
    )


@pytest.fixture
def roster(store: RecordStore) -> Roster:
    """The ``roams`` roster with one empty event, ``roam-1``."""
    return store.save_roster(
        Roster(
            id="roams",
            scheduled=[
                RosterEvent(
                    id="roam-1",
                    category="roam",
                    title="Evening Roam",
                    creator_id="U0",
                )
            ],
        )
    )


@pytest.fixture
def wait_until() -> Callable:
    """Poll a predicate until it holds, failing after a timeout."""

    async def wait(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return wait
