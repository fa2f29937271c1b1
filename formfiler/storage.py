"""Storage backends for filed attachments.

The pipeline only talks to the `StoragePort` protocol below, so it can run
against a hosted drive, a local directory tree or the in-memory fake used in
tests.

- `InMemoryStorage` keeps everything in dicts and records each mutation.
- `LocalFolderStorage` works on a directory tree rooted at a given path.
"""
from __future__ import annotations

import itertools
import os
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple


class StorageError(Exception):
    """A storage operation could not be carried out."""


class NotFoundError(StorageError):
    """No file or folder exists for the given id."""


@dataclass
class StoredFile:
    id: str
    name: str
    parent_ids: List[str] = field(default_factory=list)
    description: str = ""


@dataclass
class StoredFolder:
    id: str
    name: str
    parent_id: Optional[str] = None


class StoragePort(Protocol):
    def get_file(self, file_id: str) -> StoredFile: ...

    def find_folders(self, parent_id: str, name: str) -> List[StoredFolder]: ...

    def create_folder(self, parent_id: str, name: str) -> StoredFolder: ...

    def move_file(self, file_id: str, folder_id: str) -> None: ...

    def rename_file(self, file_id: str, name: str) -> None: ...

    def set_description(self, file_id: str, description: str) -> None: ...


class InMemoryStorage:
    """Dict-backed storage. Every mutating call is appended to `operations`."""

    def __init__(self) -> None:
        self.folders: Dict[str, StoredFolder] = {}
        self.files: Dict[str, StoredFile] = {}
        self.operations: List[Tuple[str, ...]] = []
        self._ids = itertools.count(1)

    def add_folder(self, name: str, parent_id: Optional[str] = None, folder_id: Optional[str] = None) -> StoredFolder:
        folder = StoredFolder(id=folder_id or f"folder-{next(self._ids)}", name=name, parent_id=parent_id)
        self.folders[folder.id] = folder
        return folder

    def add_file(self, name: str, parent_id: str, file_id: Optional[str] = None, description: str = "") -> StoredFile:
        stored = StoredFile(id=file_id or f"file-{next(self._ids)}", name=name, parent_ids=[parent_id], description=description)
        self.files[stored.id] = stored
        return stored

    def children(self, parent_id: str) -> List[StoredFolder]:
        return [f for f in self.folders.values() if f.parent_id == parent_id]

    def get_file(self, file_id: str) -> StoredFile:
        stored = self._file(file_id)
        return replace(stored, parent_ids=list(stored.parent_ids))

    def find_folders(self, parent_id: str, name: str) -> List[StoredFolder]:
        self._folder(parent_id)
        return [f for f in self.children(parent_id) if f.name == name]

    def create_folder(self, parent_id: str, name: str) -> StoredFolder:
        self._folder(parent_id)
        folder = self.add_folder(name, parent_id=parent_id)
        self.operations.append(("create_folder", parent_id, name))
        return folder

    def move_file(self, file_id: str, folder_id: str) -> None:
        stored = self._file(file_id)
        self._folder(folder_id)
        stored.parent_ids = [folder_id]
        self.operations.append(("move_file", file_id, folder_id))

    def rename_file(self, file_id: str, name: str) -> None:
        self._file(file_id).name = name
        self.operations.append(("rename_file", file_id, name))

    def set_description(self, file_id: str, description: str) -> None:
        self._file(file_id).description = description
        self.operations.append(("set_description", file_id, description))

    def _file(self, file_id: str) -> StoredFile:
        try:
            return self.files[file_id]
        except KeyError:
            raise NotFoundError(f"No file with id {file_id!r}") from None

    def _folder(self, folder_id: str) -> StoredFolder:
        try:
            return self.folders[folder_id]
        except KeyError:
            raise NotFoundError(f"No folder with id {folder_id!r}") from None


ROOT_FOLDER_ID = "."


def description_sidecar(path: Path) -> Path:
    return path.with_name(f".{path.name}.description")


class LocalFolderStorage:
    """Directory-tree storage rooted at `root`.

    Ids are POSIX paths relative to the root (`"."` is the root itself). A file
    keeps the id it was first resolved with after it has been moved or
    renamed, until a new file appears at that path. Descriptions live in a hidden
    sidecar file next to the file they describe.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root).resolve()
        self._locations: Dict[str, str] = {}

    def get_file(self, file_id: str) -> StoredFile:
        path = self._file_path(file_id)
        sidecar = description_sidecar(path)
        description = sidecar.read_text(encoding="utf-8") if sidecar.is_file() else ""
        return StoredFile(id=file_id, name=path.name, parent_ids=[self._rel(path.parent)], description=description)

    def find_folders(self, parent_id: str, name: str) -> List[StoredFolder]:
        parent = self._folder_path(parent_id)
        # compare names exactly; is_dir() alone is case-insensitive on some platforms
        return [
            StoredFolder(id=self._rel(child), name=child.name, parent_id=parent_id)
            for child in sorted(parent.iterdir())
            if child.is_dir() and child.name == name
        ]

    def create_folder(self, parent_id: str, name: str) -> StoredFolder:
        self._check_name(name)
        target = self._folder_path(parent_id) / name
        try:
            target.mkdir()
        except FileExistsError as exc:
            raise StorageError(f"Folder already exists: {self._rel(target)}") from exc
        return StoredFolder(id=self._rel(target), name=name, parent_id=parent_id)

    def move_file(self, file_id: str, folder_id: str) -> None:
        src = self._file_path(file_id)
        self._relocate(file_id, src, self._folder_path(folder_id) / src.name)

    def rename_file(self, file_id: str, name: str) -> None:
        self._check_name(name)
        src = self._file_path(file_id)
        self._relocate(file_id, src, src.with_name(name))

    def set_description(self, file_id: str, description: str) -> None:
        path = self._file_path(file_id)
        description_sidecar(path).write_text(description, encoding="utf-8")

    def _relocate(self, file_id: str, src: Path, dest: Path) -> None:
        if dest == src:
            return
        if dest.exists():
            raise StorageError(f"Refusing to overwrite existing file: {self._rel(dest)}")
        shutil.move(str(src), str(dest))
        sidecar = description_sidecar(src)
        if sidecar.is_file():
            shutil.move(str(sidecar), str(description_sidecar(dest)))
        self._locations[file_id] = self._rel(dest)

    def _resolve(self, rel: str) -> Path:
        path = (self.root / rel).resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageError(f"Path escapes storage root: {rel}")
        return path

    def _file_path(self, file_id: str) -> Path:
        # a file sitting at the id path is a fresh upload; any older mapping is stale
        path = self._resolve(file_id)
        if path.is_file():
            self._locations.pop(file_id, None)
        elif file_id in self._locations:
            path = self._resolve(self._locations[file_id])
        if not path.is_file():
            raise NotFoundError(f"No file with id {file_id!r}")
        return path

    def _folder_path(self, folder_id: str) -> Path:
        path = self._resolve(folder_id)
        if not path.is_dir():
            raise NotFoundError(f"No folder with id {folder_id!r}")
        return path

    def _rel(self, path: Path) -> str:
        return Path(os.path.relpath(path, self.root)).as_posix()

    @staticmethod
    def _check_name(name: str) -> None:
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise StorageError(f"Invalid name: {name!r}")
