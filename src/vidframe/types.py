from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vidframe.dispatcher import ResultChannel


class FrameError(Exception):
    """ffmpeg exited with a failure status."""

    def __init__(self, path: str, index: int, returncode: int, stderr: str = ""):
        self.path = path
        self.index = index
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(f"ffmpeg exited with status {returncode} for {path}[{index}]: {detail}")


class ExtractionCancelled(Exception):
    """The dispatcher stopped while the extraction was running."""


@dataclass(frozen=True)
class Result:
    data: bytes = b""
    error: Exception | None = None


@dataclass
class Job:
    path: str
    index: int
    width: int
    height: int
    thumbnail: bool
    channel: ResultChannel = field(repr=False)


@dataclass
class FileInfo:
    name: str
    size: int
