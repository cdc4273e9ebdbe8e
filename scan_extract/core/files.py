"""Loading scanned page images from disk as work items."""

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..types.documents import PagePayload, WorkItem

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB

ACCEPTED_MIME_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}


@dataclass
class LoadResult:
    """Work items loaded from disk plus the files that were rejected."""

    items: list[WorkItem] = field(default_factory=list)
    rejected: dict[str, str] = field(default_factory=dict)  # path -> reason


def generate_item_id() -> str:
    """Generate a unique work item id."""
    return f"file_{uuid.uuid4().hex[:12]}"


def validate_file(path: Path) -> Optional[str]:
    """Check a file can be sent as a page image.

    Returns:
        A rejection reason, or None if the file is acceptable.
    """
    suffix = path.suffix.lower()
    if suffix == ".pdf":
        return f"PDF files must be rasterized to images first: {path.name}"
    if suffix not in ACCEPTED_MIME_TYPES:
        return f"Unsupported file type: {path.name}"
    if path.stat().st_size > MAX_FILE_SIZE_BYTES:
        return f"File size exceeds 10MB: {path.name}"
    return None


def expand_paths(paths: list[Path]) -> list[Path]:
    """Expand directories into their files, sorted by name."""
    expanded: list[Path] = []
    for path in paths:
        if path.is_dir():
            expanded.extend(sorted(p for p in path.iterdir() if p.is_file()))
        else:
            expanded.append(path)
    return expanded


def load_work_items(paths: list[Path]) -> LoadResult:
    """Load each image file as a single-page work item.

    Args:
        paths: Files or directories of files.

    Returns:
        LoadResult with items in input order and rejected files.
    """
    result = LoadResult()

    for path in expand_paths(paths):
        if not path.exists():
            result.rejected[str(path)] = f"File not found: {path}"
            continue

        reason = validate_file(path)
        if reason:
            result.rejected[str(path)] = reason
            logger.warning(reason)
            continue

        page = PagePayload.from_bytes(path.read_bytes(), ACCEPTED_MIME_TYPES[path.suffix.lower()])
        result.items.append(
            WorkItem(id=generate_item_id(), source_label=path.name, pages=[page])
        )

    logger.debug(f"Loaded {len(result.items)} work items, rejected {len(result.rejected)}")
    return result
