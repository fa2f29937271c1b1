"""Static settings for the filing pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

FILENAME_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
READABLE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_QUESTION_TITLE = "Unit Number"
DEFAULT_FOLDER_NAME = "Unsorted"
INVALID_FOLDER_NAME = "Invalid_Unit_Number"


@dataclass(frozen=True)
class FilingConfig:
    question_title: str = DEFAULT_QUESTION_TITLE
    default_folder_name: str = DEFAULT_FOLDER_NAME
    invalid_folder_name: str = INVALID_FOLDER_NAME
    # IANA zone name; aware timestamps are shown in this zone
    timezone: Optional[str] = None

    def __post_init__(self) -> None:
        if self.timezone:
            try:
                ZoneInfo(self.timezone)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"Unknown time zone: {self.timezone}") from exc

    def localize(self, timestamp: datetime) -> datetime:
        """Return `timestamp` in the configured zone (naive values are left alone)."""
        if self.timezone and timestamp.tzinfo is not None:
            return timestamp.astimezone(ZoneInfo(self.timezone))
        return timestamp
