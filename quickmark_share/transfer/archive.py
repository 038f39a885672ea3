"""
Zip archives exchanged between peers.

An archive holds exactly one ``index.json`` plus ``<noteId>.md`` bodies.
"""

import logging
import os
import shutil
import zipfile
from pathlib import Path

from quickmark_share.config import INDEX_FILE, NOTE_EXTENSION
from quickmark_share.errors import DataError
from quickmark_share.notes.models import NoteMetadata
from quickmark_share.notes.store import NoteStore, dump_index, parse_index

logger = logging.getLogger(__name__)


def pack_all(store: NoteStore, out_path: str | os.PathLike) -> int:
    """Zip the index and every note body. Returns the number of entries."""
    count = 0
    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(store.notes_dir.iterdir()):
            if not path.is_file():
                continue
            name = path.name
            if name.lower() == INDEX_FILE or name.endswith(NOTE_EXTENSION):
                zf.write(path, arcname=name)
                count += 1
    logger.debug(f"Packed {count} entries into {out_path}")
    return count


def pack_single(store: NoteStore, note_id: str, out_path: str | os.PathLike) -> NoteMetadata:
    """Zip one note with a regenerated single-entry index."""
    meta = store.find(note_id)
    if meta is None:
        raise DataError(f"Note {note_id} is not in the index")

    body = store.note_path(note_id)
    if not body.is_file():
        raise DataError(f"Note {note_id} is indexed but {body.name} is missing")

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(INDEX_FILE, dump_index([meta]))
        zf.write(body, arcname=body.name)
    return meta


def _member_target(dest: Path, name: str) -> Path:
    target = (dest / name).resolve()
    if target != dest and not target.is_relative_to(dest):
        raise DataError(f"Archive member escapes destination: {name!r}")
    return target


def unpack(archive_path: str | os.PathLike, dest_dir: str | os.PathLike) -> list[str]:
    """
    Extract every member of ``archive_path`` into ``dest_dir``.

    Members whose canonical path falls outside ``dest_dir`` are refused
    before anything is written. Returns the extracted member names.
    """
    dest = Path(dest_dir).resolve()
    os.makedirs(dest, exist_ok=True)

    try:
        with zipfile.ZipFile(archive_path) as zf:
            members = zf.infolist()
            targets = [(m, _member_target(dest, m.filename)) for m in members]

            for member, target in targets:
                if member.is_dir():
                    os.makedirs(target, exist_ok=True)
                    continue
                os.makedirs(target.parent, exist_ok=True)
                with zf.open(member) as src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
    except zipfile.BadZipFile as e:
        raise DataError(f"Received archive is not a valid zip: {e}") from e

    return [m.filename for m in members]


def read_index(path: str | os.PathLike) -> list[NoteMetadata]:
    """Read an extracted index file."""
    path = Path(path)
    if not path.is_file():
        raise DataError(f"Archive has no {INDEX_FILE}")
    return parse_index(path.read_bytes())
