"""Turn submission documents from the form host into `SubmissionEvent`s.

A document mirrors the host's "on form submit" event::

    {"response": {"respondentEmail": "...",
                  "timestamp": "2024-03-05T14:07:22",
                  "itemResponses": [{"title": "...", "type": "TEXT", "response": "..."}]}}

A document without a response stands for a run with no submission and maps
to None.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from formfiler.models import Answer, FileUploadAnswer, SubmissionEvent, TextAnswer

FILE_UPLOAD = "FILE_UPLOAD"


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        raise ValueError(f"Missing or invalid submission timestamp: {value!r}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def parse_answer(item: Dict[str, Any]) -> Answer:
    if not isinstance(item, dict):
        raise ValueError(f"Item response must be an object, got {type(item).__name__}")
    title = str(item.get("title", ""))
    value = item.get("response")

    if item.get("type") == FILE_UPLOAD:
        if value is None:
            file_ids: List[str] = []
        elif isinstance(value, str):
            file_ids = [value]
        else:
            file_ids = [str(v) for v in value]
        return FileUploadAnswer(title=title, file_ids=file_ids)

    if value is None:
        text = ""
    elif isinstance(value, list):
        # checkbox and grid answers arrive as lists
        text = ",".join("" if v is None else str(v) for v in value)
    else:
        text = str(value)
    return TextAnswer(title=title, text=text)


def parse_submission(payload: Optional[Dict[str, Any]]) -> Optional[SubmissionEvent]:
    if not payload:
        return None
    response = payload.get("response")
    if not response:
        return None
    if not isinstance(response, dict):
        raise ValueError("Submission response must be an object")

    items = response.get("itemResponses") or []
    return SubmissionEvent(
        respondent_email=response.get("respondentEmail") or None,
        timestamp=parse_timestamp(response.get("timestamp")),
        answers=[parse_answer(item) for item in items],
    )


def load_submission(path: str) -> Optional[SubmissionEvent]:
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    if not text.strip():
        return None
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise ValueError(f"Submission document must be a JSON object: {path}")
    return parse_submission(payload)
