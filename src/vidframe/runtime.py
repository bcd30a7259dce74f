import shutil
import sys
from pathlib import Path

from vidframe import frames


def _check_binary(name: str) -> bool:
    return shutil.which(name) is not None


def check(needs_ffmpeg: bool = False, storage_dir: Path | None = None) -> list[str]:
    errors = []

    if needs_ffmpeg and not _check_binary(frames.FFMPEG_BIN):
        errors.append(f"{frames.FFMPEG_BIN} not found in PATH; install from https://ffmpeg.org/ or set FFMPEG_BIN")

    if storage_dir is not None and storage_dir.exists() and not storage_dir.is_dir():
        errors.append(f"storage directory {storage_dir} exists but is not a directory")

    return errors


def require(needs_ffmpeg: bool = False, storage_dir: Path | None = None):
    errors = check(needs_ffmpeg=needs_ffmpeg, storage_dir=storage_dir)
    if errors:
        print("Missing requirements:", file=sys.stderr)
        for e in errors:
            print(f"  - {e}", file=sys.stderr)
        sys.exit(1)
