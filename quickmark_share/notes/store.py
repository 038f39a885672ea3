"""
Boundary to the notes storage layer.

Sharing only needs the notes directory, the index file inside it and the
note bodies addressed by id; it never interprets note content.
"""

import json
import logging
import os
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from quickmark_share.config import INDEX_FILE, NOTE_EXTENSION
from quickmark_share.errors import DataError
from quickmark_share.notes.models import NoteMetadata

logger = logging.getLogger(__name__)

_index_adapter = TypeAdapter(list[NoteMetadata])


def parse_index(raw: str | bytes) -> list[NoteMetadata]:
    """Parse the JSON array held by an index file."""
    try:
        return _index_adapter.validate_json(raw)
    except ValidationError as e:
        raise DataError(f"Invalid notes index: {e.error_count()} error(s)") from e


def dump_index(notes: list[NoteMetadata]) -> str:
    return json.dumps(
        [n.model_dump(by_alias=True) for n in notes], indent=2
    )


class NoteStore:
    """Notes directory with an ``index.json`` and ``<id>.md`` bodies."""

    def __init__(self, notes_dir: str | os.PathLike) -> None:
        self._dir = Path(notes_dir)
        os.makedirs(self._dir, exist_ok=True)

    @property
    def notes_dir(self) -> Path:
        return self._dir

    @property
    def index_path(self) -> Path:
        return self._dir / INDEX_FILE

    def note_path(self, note_id: str) -> Path:
        return self._dir / f"{note_id}{NOTE_EXTENSION}"

    def load_index(self) -> list[NoteMetadata]:
        """Return the live index, or an empty list if none exists yet."""
        if not self.index_path.exists():
            return []
        return parse_index(self.index_path.read_text(encoding="utf-8"))

    def save_index(self, notes: list[NoteMetadata]) -> None:
        self.index_path.write_text(dump_index(notes), encoding="utf-8")

    def find(self, note_id: str) -> NoteMetadata | None:
        return next((n for n in self.load_index() if n.id == note_id), None)
