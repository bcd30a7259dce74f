from pathlib import Path
from typing import BinaryIO

from vidframe.types import FileInfo


class Storage:
    """Flat directory of video files, one file per logical name."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path(self, filename: str) -> Path:
        # Only the final component is honoured so names can't escape the directory.
        name = Path(filename).name
        if name in ("", ".", ".."):
            raise ValueError(f"invalid filename: {filename!r}")
        return self.directory / name

    def create(self, filename: str) -> BinaryIO:
        """Open a new file for writing; FileExistsError if the name is taken."""
        return open(self.path(filename), "xb")

    def list_files(self) -> list[FileInfo]:
        files = []
        for p in sorted(self.directory.iterdir()):
            if not p.is_file():
                continue
            try:
                size = p.stat().st_size
            except OSError:
                size = 0
            files.append(FileInfo(name=p.name, size=size))
        return files
