import asyncio
import socket
import time

import pytest

from quickmark_share.config import ShareSettings
from quickmark_share.notes.models import NoteMetadata
from quickmark_share.notes.store import NoteStore


def write_notes(store: NoteStore, notes: list[tuple[str, str, str, str]]) -> None:
    """Write (id, title, updated_at, content) notes and their index."""
    index = []
    for note_id, title, updated_at, content in notes:
        store.note_path(note_id).write_text(content, encoding="utf-8")
        index.append(NoteMetadata(id=note_id, title=title, updated_at=updated_at))
    store.save_index(index)


def free_port(kind: int = socket.SOCK_STREAM) -> int:
    with socket.socket(socket.AF_INET, kind) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def make_settings(notes_dir, **overrides) -> ShareSettings:
    values = dict(
        device_name="test-host",
        notes_dir=str(notes_dir),
        bind_host="127.0.0.1",
        discovery_port=0,
        transfer_port=0,
        connect_timeout=5,
        ack_timeout=5,
        read_timeout=5,
        sweep_window=0.5,
        send_discovery_timeout=2,
        legacy_receive_timeout=5,
    )
    values.update(overrides)
    return ShareSettings(**values)


class EventRecorder:
    """EventBus subscriber that keeps every event for assertions."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, event: str, data: dict) -> None:
        self.events.append((event, data))

    def of(self, name: str) -> list[dict]:
        return [data for event, data in self.events if event == name]

    async def wait_for(self, name: str, timeout: float = 5.0, count: int = 1) -> dict:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            found = self.of(name)
            if len(found) >= count:
                return found[count - 1]
            await asyncio.sleep(0.01)
        raise AssertionError(f"no {name} event (#{count}); saw {self.events}")


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path / "notes")


@pytest.fixture
def store(settings):
    return NoteStore(settings.notes_dir)


@pytest.fixture
def recorder():
    return EventRecorder()
