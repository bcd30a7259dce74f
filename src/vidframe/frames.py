import asyncio
import logging
import os
from pathlib import Path

from vidframe.types import FrameError

FFMPEG_BIN = os.environ.get("FFMPEG_BIN", "ffmpeg")

log = logging.getLogger(__name__)


def build_args(
    path: str | Path, index: int, width: int = 0, height: int = 0, thumbnail: bool = False,
) -> list[str]:
    """ffmpeg arguments that write frame `index` of `path` to stdout as a single JPEG.

    Frames are selected by decode order (`gte(n,index)` then one output frame),
    so an index past the end of the stream produces no output rather than an error.
    Scaling keeps the aspect ratio and fits inside width x height; thumbnails are
    additionally padded to exactly width x height with the picture centered.
    """
    if index < 0 or width < 0 or height < 0:
        raise ValueError(f"index, width and height must be non-negative, got {index}, {width}, {height}")

    w = width if width > 0 else -1
    h = height if height > 0 else -1

    filters = [f"select=gte(n\\,{index})"]
    if w > 0 or h > 0:
        filters.append(f"scale={w}:{h}:force_original_aspect_ratio=decrease")
        if thumbnail and w > 0 and h > 0:
            filters.append(f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2")

    return [
        "-nostdin", "-hide_banner", "-loglevel", "error",
        "-i", str(path),
        "-vf", ",".join(filters),
        "-frames:v", "1",
        "-f", "image2",
        "-c:v", "mjpeg",
        "pipe:1",
    ]


async def extract(
    path: str | Path, index: int, width: int = 0, height: int = 0, thumbnail: bool = False,
) -> bytes:
    args = build_args(path, index, width, height, thumbnail)
    proc = await asyncio.create_subprocess_exec(
        FFMPEG_BIN, *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        await proc.wait()
        log.debug("Killed ffmpeg for %s[%d]", path, index)
        raise

    if proc.returncode != 0:
        raise FrameError(str(path), index, proc.returncode, stderr.decode(errors="replace")[-2000:])
    return stdout
