"""Data models for one form submission and what filing did with it."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union


@dataclass(frozen=True)
class TextAnswer:
    """Free-text (or any non-upload) answer."""
    title: str
    text: str


@dataclass(frozen=True)
class FileUploadAnswer:
    """Answer to a file-upload question: storage ids of the uploaded files."""
    title: str
    file_ids: List[str] = field(default_factory=list)


Answer = Union[TextAnswer, FileUploadAnswer]


@dataclass
class SubmissionEvent:
    respondent_email: Optional[str]
    timestamp: datetime
    answers: List[Answer] = field(default_factory=list)


@dataclass
class ProcessedFile:
    file_id: str
    original_name: str
    new_name: str


@dataclass
class FilingResult:
    folder_name: str
    folder_id: Optional[str] = None  # None when nothing was uploaded
    files: List[ProcessedFile] = field(default_factory=list)
    error: Optional[str] = None  # set when filing stopped partway
