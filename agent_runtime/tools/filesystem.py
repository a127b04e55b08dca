from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True, slots=True)
class DirEntry:
    name: str
    is_dir: bool


@dataclass(frozen=True, slots=True)
class FileStat:
    size: int
    is_dir: bool
    is_file: bool


class FileSystem(Protocol):
    def read_file(self, path: Path) -> str: ...

    def write_file(self, path: Path, content: str) -> int: ...

    def read_dir(self, path: Path) -> list[DirEntry]: ...

    def stat(self, path: Path) -> FileStat: ...

    def delete_path(self, path: Path) -> None: ...

    def make_dir(self, path: Path) -> None: ...

    def move_path(self, source: Path, target: Path) -> None: ...


class LocalFileSystem:
    def read_file(self, path: Path) -> str:
        return path.read_text(encoding="utf-8")

    def write_file(self, path: Path, content: str) -> int:
        """Write through a temp file in the same directory and rename it into place."""
        path.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8")
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return len(data)

    def read_dir(self, path: Path) -> list[DirEntry]:
        return [DirEntry(name=entry.name, is_dir=entry.is_dir()) for entry in os.scandir(path)]

    def stat(self, path: Path) -> FileStat:
        result = path.stat()
        return FileStat(size=result.st_size, is_dir=path.is_dir(), is_file=path.is_file())

    def delete_path(self, path: Path) -> None:
        path.unlink()

    def make_dir(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)

    def move_path(self, source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(source, target)
