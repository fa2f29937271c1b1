"""Tests for watcher module"""
import json
import logging
import os
import shutil
import tempfile
from unittest.mock import Mock, patch

import pytest

from formfiler.config import FilingConfig
from formfiler.storage import LocalFolderStorage
from watcher import NewSubmissionHandler, ensure_dir, main, parse_args, process_existing, setup_logger


def submission(file_ids, unit="12B"):
    return {
        "response": {
            "respondentEmail": "alice@example.com",
            "timestamp": "2024-03-05T14:07:22",
            "itemResponses": [
                {"title": "Unit Number", "type": "TEXT", "response": unit},
                {"title": "Photos", "type": "FILE_UPLOAD", "response": file_ids},
            ],
        }
    }


class TestEnsureDir:

    def test_ensure_dir_creates_nested_directories(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            nested = os.path.join(tmpdir, "a", "b")
            ensure_dir(nested)
            assert os.path.isdir(nested)

    def test_ensure_dir_existing_directory(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            ensure_dir(tmpdir)
            assert os.path.exists(tmpdir)


class TestSetupLogger:

    @pytest.fixture
    def logger_in_tmp(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            logfile = os.path.join(tmpdir, "test.log")
            logger = setup_logger(logfile)
            yield logger, logfile
            # release file handles before the directory is removed
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)

    def test_setup_logger_writes_file(self, logger_in_tmp):
        logger, logfile = logger_in_tmp
        logger.info("Test message")
        assert os.path.exists(logfile)
        assert logger.name == "form_filer"
        assert logger.level == logging.INFO

    def test_setup_logger_rotating_handler(self, logger_in_tmp):
        logger, _ = logger_in_tmp
        assert any(hasattr(h, "maxBytes") for h in logger.handlers)


class TestNewSubmissionHandler:

    @pytest.fixture
    def mock_logger(self):
        return Mock(spec=logging.Logger)

    @pytest.fixture
    def dirs(self):
        inbox = tempfile.mkdtemp()
        storage_root = tempfile.mkdtemp()
        processed_dir = tempfile.mkdtemp()
        uploads = os.path.join(storage_root, "uploads")
        os.makedirs(uploads)
        for name in ("photo.jpg", "note.pdf"):
            with open(os.path.join(uploads, name), "w") as f:
                f.write(name)
        yield inbox, storage_root, processed_dir
        for path in (inbox, storage_root, processed_dir):
            shutil.rmtree(path, ignore_errors=True)

    def make_handler(self, logger, storage_root, processed_dir):
        return NewSubmissionHandler(
            logger,
            LocalFolderStorage(storage_root),
            config=FilingConfig(),
            processed_dir=processed_dir,
            settle_seconds=0.01,
            max_tries=2,
        )

    def drop(self, inbox, name, payload):
        path = os.path.join(inbox, name)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        return path

    def event_for(self, path, is_directory=False):
        event = Mock()
        event.is_directory = is_directory
        event.src_path = path
        event.dest_path = path
        return event

    def test_ignores_directories(self, mock_logger, dirs):
        _, storage_root, processed_dir = dirs
        handler = self.make_handler(mock_logger, storage_root, processed_dir)
        handler.on_created(self.event_for("/some/dir", is_directory=True))
        mock_logger.info.assert_not_called()

    def test_ignores_non_json_files(self, mock_logger, dirs):
        inbox, storage_root, processed_dir = dirs
        path = os.path.join(inbox, "readme.txt")
        with open(path, "w") as f:
            f.write("hi")
        handler = self.make_handler(mock_logger, storage_root, processed_dir)

        handler.on_created(self.event_for(path))

        mock_logger.info.assert_not_called()
        assert os.path.exists(path)

    def test_files_attachments_and_archives_document(self, mock_logger, dirs):
        inbox, storage_root, processed_dir = dirs
        path = self.drop(inbox, "sub.json", submission(["uploads/photo.jpg", "uploads/note.pdf"]))
        handler = self.make_handler(mock_logger, storage_root, processed_dir)

        handler.on_created(self.event_for(path))

        target = os.path.join(storage_root, "uploads", "12B")
        assert sorted(n for n in os.listdir(target) if not n.startswith(".")) == [
            "alice@example.com_2024-03-05_14-07-22_1_note.pdf",
            "alice@example.com_2024-03-05_14-07-22_photo.jpg",
        ]
        with open(os.path.join(target, ".alice@example.com_2024-03-05_14-07-22_photo.jpg.description")) as f:
            assert f.read().endswith("Unit: 12B")
        assert not os.path.exists(path)
        assert os.path.exists(os.path.join(processed_dir, "filed", "sub.json"))
        assert any("New submission document" in str(call) for call in mock_logger.info.call_args_list)

    def test_moved_in_documents_are_handled(self, mock_logger, dirs):
        inbox, storage_root, processed_dir = dirs
        path = self.drop(inbox, "sub.json", submission(["uploads/photo.jpg"]))
        handler = self.make_handler(mock_logger, storage_root, processed_dir)

        handler.on_moved(self.event_for(path))

        assert os.path.isdir(os.path.join(storage_root, "uploads", "12B"))

    def test_document_without_response_is_archived_untouched(self, mock_logger, dirs):
        inbox, storage_root, processed_dir = dirs
        path = self.drop(inbox, "manual.json", {})
        handler = self.make_handler(mock_logger, storage_root, processed_dir)

        handler.on_created(self.event_for(path))

        assert sorted(os.listdir(os.path.join(storage_root, "uploads"))) == ["note.pdf", "photo.jpg"]
        assert os.path.exists(os.path.join(processed_dir, "skipped", "manual.json"))

    def test_unreadable_document_is_archived_with_error(self, mock_logger, dirs):
        inbox, storage_root, processed_dir = dirs
        path = os.path.join(inbox, "bad.json")
        with open(path, "w") as f:
            f.write("{broken")
        handler = self.make_handler(mock_logger, storage_root, processed_dir)

        handler.on_created(self.event_for(path))

        assert mock_logger.exception.called
        assert not os.path.exists(path)
        archived = os.path.join(processed_dir, "unreadable", "bad.json")
        assert os.path.exists(archived)
        assert os.path.exists(archived + ".error")

    def test_failed_filing_is_archived_with_error(self, mock_logger, dirs):
        inbox, storage_root, processed_dir = dirs
        path = self.drop(inbox, "sub.json", submission(["uploads/photo.jpg", "uploads/gone.jpg"]))
        handler = self.make_handler(mock_logger, storage_root, processed_dir)

        handler.on_created(self.event_for(path))

        archived = os.path.join(processed_dir, "failed", "sub.json")
        assert os.path.exists(archived)
        with open(archived + ".error") as f:
            assert "gone.jpg" in f.read()
        # the file handled before the failure stays filed
        assert os.path.exists(os.path.join(storage_root, "uploads", "12B", "alice@example.com_2024-03-05_14-07-22_photo.jpg"))

    def test_document_already_handled_is_ignored(self, mock_logger, dirs):
        inbox, storage_root, processed_dir = dirs
        path = self.drop(inbox, "sub.json", submission(["uploads/photo.jpg"]))
        handler = self.make_handler(mock_logger, storage_root, processed_dir)

        handler.on_created(self.event_for(path))
        handler.on_moved(self.event_for(path))

        assert os.listdir(os.path.join(processed_dir, "filed")) == ["sub.json"]

    def test_skips_archiving_without_processed_dir(self, mock_logger, dirs):
        inbox, storage_root, _ = dirs
        path = self.drop(inbox, "sub.json", submission(["uploads/photo.jpg"]))
        handler = self.make_handler(mock_logger, storage_root, None)

        handler.on_created(self.event_for(path))

        assert os.path.exists(path)
        assert any("leaving" in str(call) for call in mock_logger.info.call_args_list)

    def test_archiving_errors_are_logged(self, mock_logger, dirs):
        inbox, storage_root, processed_dir = dirs
        path = self.drop(inbox, "sub.json", {})
        handler = self.make_handler(mock_logger, storage_root, processed_dir)

        with patch("watcher.archive_payload", side_effect=OSError("disk full")):
            handler.on_created(self.event_for(path))

        assert mock_logger.exception.called

    def test_process_existing(self, mock_logger, dirs):
        inbox, storage_root, processed_dir = dirs
        self.drop(inbox, "a.json", submission(["uploads/photo.jpg"], unit="1"))
        self.drop(inbox, "b.json", submission(["uploads/note.pdf"], unit="2"))
        handler = self.make_handler(mock_logger, storage_root, processed_dir)

        assert process_existing(handler, inbox) == 2

        assert os.path.isdir(os.path.join(storage_root, "uploads", "1"))
        assert os.path.isdir(os.path.join(storage_root, "uploads", "2"))
        assert os.listdir(inbox) == []


class TestMain:

    def test_observer_starts_before_inbox_sweep(self):
        calls = []
        observer = Mock()
        observer.start.side_effect = lambda: calls.append("start")

        def sweep(handler, inbox):
            calls.append("sweep")
            return 0

        with tempfile.TemporaryDirectory() as tmpdir:
            args = parse_args([
                "-i", os.path.join(tmpdir, "in"), "-s", os.path.join(tmpdir, "store"),
                "-l", os.path.join(tmpdir, "logs"), "-d", os.path.join(tmpdir, "done"),
                "--process-existing",
            ])
            with patch("watcher.parse_args", return_value=args), \
                    patch("watcher.setup_logger", return_value=Mock(spec=logging.Logger)), \
                    patch("watcher.Observer", return_value=observer), \
                    patch("watcher.process_existing", side_effect=sweep), \
                    patch("watcher.time.sleep", side_effect=KeyboardInterrupt):
                assert main() == 0

        assert calls == ["start", "sweep"]
        observer.stop.assert_called_once()


class TestParseArgs:

    def test_parse_args_defaults(self):
        with patch("sys.argv", ["watcher.py"]):
            args = parse_args()
        assert args.inbox == os.path.join("data", "inbox")
        assert args.storage == os.path.join("data", "storage")
        assert args.question == "Unit Number"
        assert args.default_folder == "Unsorted"
        assert args.invalid_folder == "Invalid_Unit_Number"
        assert args.timezone is None
        assert args.settle == 0.5
        assert args.tries == 10
        assert args.process_existing is False

    def test_parse_args_short_flags(self):
        args = parse_args(["-i", "in", "-s", "store", "-l", "logs", "-d", "done"])
        assert (args.inbox, args.storage, args.logdir, args.processed) == ("in", "store", "logs", "done")

    def test_parse_args_filing_options(self):
        args = parse_args([
            "--question", "Room", "--default-folder", "Misc",
            "--invalid-folder", "Bad", "--timezone", "UTC", "--process-existing",
        ])
        assert args.question == "Room"
        assert args.default_folder == "Misc"
        assert args.invalid_folder == "Bad"
        assert args.timezone == "UTC"
        assert args.process_existing is True


class TestPackaging:

    def test_tzdata_declared_for_windows(self):
        pyproject = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "pyproject.toml")
        with open(pyproject, encoding="utf-8") as f:
            text = f.read()
        assert "\"tzdata; sys_platform == 'win32'\"" in text
