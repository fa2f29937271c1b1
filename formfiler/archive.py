"""Archive submission documents once the watcher has handled them.

Handled documents leave the inbox for a subdirectory of the processed
directory named after how filing went, so a `--process-existing` sweep never
sees them again and failed submissions are easy to find:

- `filed/`       every attachment was filed
- `skipped/`     no submission or no respondent email; nothing was touched
- `failed/`      filing stopped partway (an `.error` note sits beside it)
- `unreadable/`  the document could not be parsed (same `.error` note)
"""
from __future__ import annotations

import itertools
import logging
import shutil
from pathlib import Path
from typing import Optional

from formfiler.models import FilingResult

FILED = "filed"
SKIPPED = "skipped"
FAILED = "failed"
UNREADABLE = "unreadable"


def filing_outcome(result: Optional[FilingResult]) -> str:
    if result is None:
        return SKIPPED
    if result.error:
        return FAILED
    return FILED


def unique_destination(directory: Path, name: str) -> Path:
    """`directory/name`, or `directory/stem-N.ext` for the first free N."""
    candidate = directory / name
    stem, suffix = candidate.stem, candidate.suffix
    for n in itertools.count(1):
        if not candidate.exists():
            return candidate
        candidate = directory / f"{stem}-{n}{suffix}"


def archive_payload(
    path: str,
    processed_dir: str,
    outcome: str,
    error: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    """Move `path` into `processed_dir/<outcome>/` and return the destination path.

    With `error`, the message is written to `<destination>.error`.
    """
    directory = Path(processed_dir) / outcome
    directory.mkdir(parents=True, exist_ok=True)
    dest = unique_destination(directory, Path(path).name)
    shutil.move(path, str(dest))

    if error:
        dest.with_name(f"{dest.name}.error").write_text(f"{error}\n", encoding="utf-8")

    if logger:
        logger.info("Archived submission document as %s: %s", outcome, dest)

    return str(dest)
