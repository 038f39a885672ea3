"""Last-writer-wins merge of two notes indexes."""

import logging

from quickmark_share.notes.models import NoteMetadata
from quickmark_share.notes.store import NoteStore

logger = logging.getLogger(__name__)


def merge_index(
    current: list[NoteMetadata], incoming: list[NoteMetadata]
) -> list[NoteMetadata]:
    """
    Merge ``incoming`` into ``current`` and return the result.

    New ids are appended in incoming order. For ids present on both sides
    the entry with the lexically greater ``updated_at`` is kept; ties keep
    the existing entry.
    """
    merged = list(current)
    positions = {note.id: i for i, note in enumerate(merged)}

    for note in incoming:
        pos = positions.get(note.id)
        if pos is None:
            positions[note.id] = len(merged)
            merged.append(note)
        elif note.updated_at > merged[pos].updated_at:
            merged[pos] = note

    return merged


def merge_into_store(store: NoteStore, incoming: list[NoteMetadata]) -> list[NoteMetadata]:
    """Merge ``incoming`` into the store's live index and persist it."""
    current = store.load_index()
    merged = merge_index(current, incoming)
    store.save_index(merged)
    logger.info(
        f"Merged {len(incoming)} incoming entries into index "
        f"({len(current)} -> {len(merged)} notes)"
    )
    return merged
