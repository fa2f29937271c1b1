from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from typing import Optional

from formfiler.archive import UNREADABLE, archive_payload, filing_outcome
from formfiler.config import DEFAULT_FOLDER_NAME, DEFAULT_QUESTION_TITLE, INVALID_FOLDER_NAME, FilingConfig
from formfiler.form_processor import LOGGER_NAME, process_submission
from formfiler.payload import load_submission
from formfiler.storage import LocalFolderStorage, StoragePort

try:
    from watchdog.observers import Observer
    from watchdog.events import FileSystemEventHandler
except ImportError:  # watchdog not available
    print("Required package 'watchdog' is not installed. Install with: python -m pip install watchdog")
    sys.exit(1)


class NewSubmissionHandler(FileSystemEventHandler):
    """Files the attachments of every submission document dropped into the inbox."""

    def __init__(
        self,
        logger: logging.Logger,
        storage: StoragePort,
        config: Optional[FilingConfig] = None,
        processed_dir: str | None = None,
        settle_seconds: float = 0.5,
        max_tries: int = 10,
    ) -> None:
        super().__init__()
        self.logger = logger
        self.storage = storage
        self.config = config or FilingConfig()
        self.processed_dir = processed_dir
        self.settle_seconds = settle_seconds
        self.max_tries = max_tries
        # observer thread and the startup sweep may both see one document
        self._lock = threading.Lock()

    def on_created(self, event):
        if event.is_directory:
            return
        self.handle(event.src_path)

    def on_moved(self, event):
        # documents written elsewhere and renamed into the inbox
        if event.is_directory:
            return
        self.handle(event.dest_path)

    def wait_until_settled(self, path: str) -> bool:
        """Poll the file size until two reads agree (basic guard against partial writes)."""
        prev_size = -1
        for _ in range(self.max_tries):
            try:
                size = os.path.getsize(path)
            except OSError:
                size = -1
            if size == prev_size and size != -1:
                return True
            prev_size = size
            time.sleep(self.settle_seconds)
        return False

    def handle(self, path: str) -> None:
        if not path.lower().endswith(".json"):
            return
        with self._lock:
            if not os.path.isfile(path):
                # already archived
                return
            self._handle(path)

    def _handle(self, path: str) -> None:
        if self.wait_until_settled(path):
            self.logger.info("New submission document: %s", path)
        else:
            self.logger.info("New submission document (may be incomplete): %s", path)

        try:
            submission = load_submission(path)
        except Exception as exc:
            self.logger.exception("Could not read submission document %s", path)
            self.archive(path, UNREADABLE, error=str(exc))
            return

        result = process_submission(submission, self.storage, config=self.config, logger=self.logger)
        if result is not None and result.error:
            self.logger.info("Filing stopped after %d attachment(s): %s", len(result.files), result.error)
        elif result is not None:
            self.logger.info('Filed %d attachment(s) into "%s"', len(result.files), result.folder_name)

        self.archive(path, filing_outcome(result), error=result.error if result else None)

    def archive(self, path: str, outcome: str, error: Optional[str] = None) -> None:
        if not self.processed_dir:
            self.logger.info("No processed_dir configured; leaving %s in the inbox", path)
            return
        try:
            archive_payload(path, self.processed_dir, outcome, error=error, logger=self.logger)
        except Exception:
            self.logger.exception("Error archiving submission document %s", path)


def process_existing(handler: NewSubmissionHandler, inbox: str) -> int:
    """Handle documents already waiting in `inbox`; returns how many were seen."""
    count = 0
    for name in sorted(os.listdir(inbox)):
        path = os.path.join(inbox, name)
        if os.path.isfile(path) and name.lower().endswith(".json"):
            handler.handle(path)
            count += 1
    return count


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def setup_logger(logfile: str) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    handler = RotatingFileHandler(logfile, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    return logger


DEFAULT_INBOX = os.path.join("data", "inbox")
DEFAULT_STORAGE = os.path.join("data", "storage")
DEFAULT_LOG_DIR = os.path.join("data", "logs")
DEFAULT_PROCESSED_DIR = os.path.join("data", "processed")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="File form-upload attachments as submission documents arrive")
    parser.add_argument(
        "--inbox", "-i",
        default=DEFAULT_INBOX,
        help=f"Directory the form host drops submission documents into (default {DEFAULT_INBOX})"
    )
    parser.add_argument(
        "--storage", "-s",
        default=DEFAULT_STORAGE,
        help=f"Root of the attachment storage tree; file ids are relative to it (default {DEFAULT_STORAGE})"
    )
    parser.add_argument(
        "--logdir", "-l",
        default=DEFAULT_LOG_DIR,
        help=f"Directory to write logs to (default {DEFAULT_LOG_DIR})"
    )
    parser.add_argument(
        "--processed", "-d",
        default=DEFAULT_PROCESSED_DIR,
        help=f"Directory to archive handled submission documents to (default {DEFAULT_PROCESSED_DIR})"
    )
    parser.add_argument("--question", default=DEFAULT_QUESTION_TITLE, help="Title of the question whose answer names the folder")
    parser.add_argument("--default-folder", default=DEFAULT_FOLDER_NAME, help="Folder used when that answer is empty")
    parser.add_argument("--invalid-folder", default=INVALID_FOLDER_NAME, help="Folder used when the answer has no usable characters")
    parser.add_argument("--timezone", default=None, help="IANA time zone for timestamps in names and descriptions")
    parser.add_argument("--settle", type=float, default=0.5, help="Seconds to wait between file-size checks for settle heuristic")
    parser.add_argument("--tries", type=int, default=10, help="Number of settle checks before giving up")
    parser.add_argument("--process-existing", action="store_true", help="Also handle documents already in the inbox at startup")
    return parser.parse_args(argv)


def main() -> int:
    args = parse_args()

    inbox = os.path.abspath(args.inbox)
    storage_root = os.path.abspath(args.storage)
    log_dir = os.path.abspath(args.logdir)
    processed_dir = os.path.abspath(args.processed)

    for path in (inbox, storage_root, log_dir, processed_dir):
        ensure_dir(path)

    logfile = os.path.join(log_dir, "form_filer.log")
    logger = setup_logger(logfile)

    try:
        config = FilingConfig(
            question_title=args.question,
            default_folder_name=args.default_folder,
            invalid_folder_name=args.invalid_folder,
            timezone=args.timezone,
        )
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    logger.info("Starting form filer")
    logger.info("Inbox: %s", inbox)
    logger.info("Storage root: %s", storage_root)
    logger.info("Logging to: %s", logfile)
    logger.info("Processed dir: %s", processed_dir)
    logger.info('Classifying by answer to: "%s"', config.question_title)

    event_handler = NewSubmissionHandler(
        logger,
        LocalFolderStorage(storage_root),
        config=config,
        processed_dir=processed_dir,
        settle_seconds=args.settle,
        max_tries=args.tries,
    )
    observer = Observer()
    observer.schedule(event_handler, inbox, recursive=False)
    observer.start()

    # sweep after starting so nothing dropped in between is missed
    if args.process_existing:
        count = process_existing(event_handler, inbox)
        logger.info("Handled %d waiting submission document(s)", count)

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutdown requested, stopping observer")
        observer.stop()
    observer.join()
    logger.info("Stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
