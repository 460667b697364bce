"""APKG archive extraction.

An APKG file is a zip container holding the collection database
(``collection.anki21`` or ``collection.anki2``), a ``media`` manifest
(JSON map of numeric entry name to original filename) and the media files.
"""

import json
import logging
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path

from backend.errors import InvalidArgument, ResourceExhaustion, TransientIO
from backend.tasks import CancellationToken
from ingestion.constants import COLLECTION_FILENAMES, MEDIA_MANIFEST

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


@dataclass
class ExtractedArchive:
    """Files unpacked from one APKG archive."""

    root: Path
    collection_path: Path
    media: dict[str, str]
    entries: int

    @property
    def media_count(self) -> int:
        return len(self.media)


def _safe_target(root: Path, name: str) -> Path:
    target = (root / name).resolve()
    if not target.is_relative_to(root.resolve()):
        raise InvalidArgument(f"Archive entry escapes the extraction directory: {name!r}")
    return target


def read_media_manifest(root: Path) -> dict[str, str]:
    """Read the media manifest; archives with a missing or non-JSON manifest yield ``{}``."""
    path = root / MEDIA_MANIFEST
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        # Newer clients write a compressed binary manifest
        logger.warning("Media manifest in %s is not JSON; ignoring it", root)
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


def find_collection(root: Path) -> Path:
    for name in COLLECTION_FILENAMES:
        path = root / name
        if path.is_file():
            return path
    raise InvalidArgument(f"Archive has no collection database (expected one of {', '.join(COLLECTION_FILENAMES)})")


def extract_archive(
    archive_path: Path,
    target_dir: Path,
    max_bytes: int,
    token: CancellationToken | None = None,
) -> ExtractedArchive:
    """Unzip an APKG one entry at a time into ``target_dir``.

    Raises:
        InvalidArgument: Not a zip file, unsafe entry path, or no collection database.
        ResourceExhaustion: Uncompressed content exceeds ``max_bytes``.
        TransientIO: Filesystem errors while writing.
        TaskCancelled: The token was cancelled between entries.
    """
    if not archive_path.is_file():
        raise InvalidArgument(f"Archive not found: {archive_path}")
    try:
        zf = zipfile.ZipFile(archive_path)
    except zipfile.BadZipFile as e:
        raise InvalidArgument(f"Not a valid APKG archive: {archive_path.name}") from e

    written = 0
    entries = 0
    with zf:
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            for info in zf.infolist():
                if token is not None:
                    token.raise_if_cancelled()
                target = _safe_target(target_dir, info.filename)
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if written + info.file_size > max_bytes:
                    raise ResourceExhaustion(
                        f"Archive expands beyond the {max_bytes} byte limit at entry {info.filename!r}"
                    )
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, target.open("wb") as dst:
                    shutil.copyfileobj(src, dst, _CHUNK_SIZE)
                written += info.file_size
                entries += 1
        except OSError as e:
            raise TransientIO(f"Failed to extract {archive_path.name}: {e}") from e
        except zipfile.BadZipFile as e:
            raise InvalidArgument(f"Corrupt APKG archive: {e}") from e

    logger.info("Extracted %d entries (%d bytes) from %s", entries, written, archive_path.name)
    return ExtractedArchive(
        root=target_dir,
        collection_path=find_collection(target_dir),
        media=read_media_manifest(target_dir),
        entries=entries,
    )
