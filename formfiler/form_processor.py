"""Filing pipeline for one form submission.

`process_submission` is the entry point. It checks the event, reads the
classification answer, resolves the target subfolder and then moves, renames
and describes every uploaded attachment.

Folder lookup-or-create is not atomic: two submissions with the same
classification arriving at the same time can both miss the folder and each
create one. Nothing here retries or rolls back; files handled before a failure
stay where they were moved.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional

from formfiler.config import FILENAME_TIMESTAMP_FORMAT, READABLE_TIMESTAMP_FORMAT, FilingConfig
from formfiler.models import Answer, FileUploadAnswer, FilingResult, ProcessedFile, SubmissionEvent, TextAnswer
from formfiler.storage import StoragePort, StoredFolder

LOGGER_NAME = "form_filer"

# characters the storage backends refuse in folder names
_ILLEGAL_FOLDER_CHARS = re.compile(r'[\\/:"*?<>|]')


def validate_event(event: Optional[SubmissionEvent], logger: logging.Logger) -> bool:
    if event is None:
        logger.info("Script run without a form submission event.")
        return False
    if not event.respondent_email:
        logger.info("Could not get respondent email. Ensure form is set to collect email addresses.")
        return False
    return True


def extract_classification(answers: Iterable[Answer], config: FilingConfig, logger: logging.Logger) -> str:
    """Return the answer to `config.question_title`, or the default folder name.

    Only the first answer with a matching title counts.
    """
    value = ""
    for answer in answers:
        if answer.title == config.question_title:
            if isinstance(answer, TextAnswer):
                value = answer.text
            break

    if not value or not value.strip():
        logger.info('Response for "%s" was empty. Using default folder.', config.question_title)
        return config.default_folder_name
    return value


def sanitize_folder_name(value: object) -> str:
    return _ILLEGAL_FOLDER_CHARS.sub("", str(value)).strip()


def resolve_folder_name(value: object, config: FilingConfig, logger: logging.Logger) -> str:
    folder_name = sanitize_folder_name(value)
    if not folder_name:
        logger.info('Classification resulted in an invalid folder name. Using "%s".', config.invalid_folder_name)
        folder_name = config.invalid_folder_name
    return folder_name


def find_or_create_folder(storage: StoragePort, parent_id: str, name: str, logger: logging.Logger) -> StoredFolder:
    existing = storage.find_folders(parent_id, name)
    if existing:
        return existing[0]
    folder = storage.create_folder(parent_id, name)
    logger.info('Created new subfolder: "%s"', name)
    return folder


def build_filename(
    respondent: str,
    timestamp: datetime,
    index: int,
    original_name: str,
    config: FilingConfig,
    answer_position: int = 0,
) -> str:
    """`{respondent}_{yyyy-MM-dd_HH-mm-ss}_{original}`; files after the first get an `{index}_` prefix.

    A non-zero `answer_position` (1-based position of the upload answer) turns the
    prefix into `{answer_position}-{index}_`; it is only passed when the plain
    name is already taken within the event.
    """
    stamp = config.localize(timestamp).strftime(FILENAME_TIMESTAMP_FORMAT)
    if answer_position > 0:
        prefix = f"{answer_position}-{index}_"
    else:
        prefix = f"{index}_" if index > 0 else ""
    return f"{respondent}_{stamp}_{prefix}{original_name}"


def build_description(respondent: str, timestamp: datetime, original_name: str, folder_name: str, config: FilingConfig) -> str:
    readable = config.localize(timestamp).strftime(READABLE_TIMESTAMP_FORMAT)
    return "\n".join([
        f"File uploaded by: {respondent}",
        f"Submission Timestamp: {readable}",
        f"Original Filename: {original_name}",
        f"Unit: {folder_name}",
    ])


def upload_answers(answers: Iterable[Answer]) -> List[FileUploadAnswer]:
    return [a for a in answers if isinstance(a, FileUploadAnswer) and a.file_ids]


def file_attachments(
    event: SubmissionEvent,
    result: FilingResult,
    storage: StoragePort,
    config: FilingConfig,
    logger: logging.Logger,
) -> FilingResult:
    """Move, rename and describe every upload, recording each file on `result` as it is done."""
    uploads = upload_answers(event.answers)
    if not uploads:
        logger.info("No file uploads in response from %s", event.respondent_email)
        return result

    # every attachment goes to the subfolder beside the very first upload
    first = storage.get_file(uploads[0].file_ids[0])
    if not first.parent_ids:
        raise ValueError(f'File "{first.name}" has no parent folder')
    target = find_or_create_folder(storage, first.parent_ids[0], result.folder_name, logger)
    result.folder_id = target.id

    used_names = set()
    for position, upload in enumerate(uploads):
        for index, file_id in enumerate(upload.file_ids):
            stored = storage.get_file(file_id)
            original_name = stored.name

            storage.move_file(file_id, target.id)

            new_name = build_filename(event.respondent_email, event.timestamp, index, original_name, config)
            if new_name in used_names:
                # same original name under two upload questions
                new_name = build_filename(
                    event.respondent_email, event.timestamp, index, original_name, config, answer_position=position + 1
                )
            used_names.add(new_name)
            description = build_description(event.respondent_email, event.timestamp, original_name, result.folder_name, config)
            storage.rename_file(file_id, new_name)
            storage.set_description(file_id, description)

            result.files.append(ProcessedFile(file_id=file_id, original_name=original_name, new_name=new_name))
            logger.info('Processed file: "%s" -> Moved to "%s", renamed to "%s".', original_name, result.folder_name, new_name)

    return result


def process_submission(
    event: Optional[SubmissionEvent],
    storage: StoragePort,
    config: Optional[FilingConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[FilingResult]:
    """File the attachments of one submitted response.

    Returns None when the event was skipped. Otherwise returns what was done;
    if processing failed partway, `error` is set and `files` lists only the
    files handled before the failure. Never raises; failures are logged with
    their stack trace.
    """
    config = config or FilingConfig()
    logger = logger or logging.getLogger(LOGGER_NAME)
    result = None

    try:
        if not validate_event(event, logger):
            return None

        classification = extract_classification(event.answers, config, logger)
        result = FilingResult(folder_name=resolve_folder_name(classification, config, logger))

        logger.info(
            'Processing response from: %s at %s for Unit Folder: "%s"',
            event.respondent_email,
            config.localize(event.timestamp).strftime(READABLE_TIMESTAMP_FORMAT),
            result.folder_name,
        )
        return file_attachments(event, result, storage, config, logger)
    except Exception as exc:
        logger.exception("An error occurred: %s", exc)
        if result is None:
            result = FilingResult(folder_name="")
        result.error = str(exc) or type(exc).__name__
        return result
