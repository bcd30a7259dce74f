import asyncio
import pathlib
import shutil
import subprocess

import dotenv
import pytest

dotenv.load_dotenv(pathlib.Path(__file__).parent.parent / ".env")

FAKE_JPEG = b"\xff\xd8\xff\xe0fake-jpeg"

# testsrc at 320x240, 10 frames
SAMPLE_WIDTH = 320
SAMPLE_HEIGHT = 240
SAMPLE_FRAMES = 10


class FakeEngine:
    """Stands in for frames.extract and records what the dispatcher asked of it."""

    def __init__(self, data: bytes = FAKE_JPEG, delay: float = 0.0, gated: bool = False):
        self.data = data
        self.delay = delay
        self.gated = gated
        self.error: Exception | None = None
        self.calls: list[tuple] = []
        self.running = 0
        self.peak = 0
        self._gates: dict[int, asyncio.Event] = {}

    @property
    def started(self) -> list[int]:
        return [call[1] for call in self.calls]

    def gate(self, index: int) -> asyncio.Event:
        return self._gates.setdefault(index, asyncio.Event())

    def open(self, index: int):
        self.gate(index).set()

    async def __call__(self, path, index, width, height, thumbnail) -> bytes:
        self.calls.append((path, index, width, height, thumbnail))
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            if self.gated:
                await self.gate(index).wait()
            elif self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.running -= 1
        if self.error is not None:
            raise self.error
        return self.data


async def wait_until(pred, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not pred():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture(scope="session")
def sample_video(tmp_path_factory):
    if shutil.which("ffmpeg") is None:
        pytest.skip("ffmpeg not found in PATH")
    path = tmp_path_factory.mktemp("sample") / "testsrc.mp4"
    subprocess.run(
        ["ffmpeg", "-nostdin", "-loglevel", "error",
         "-f", "lavfi", "-i", f"testsrc=size={SAMPLE_WIDTH}x{SAMPLE_HEIGHT}:rate=10",
         "-frames:v", str(SAMPLE_FRAMES), "-c:v", "mpeg4", "-pix_fmt", "yuv420p", "-y", str(path)],
        check=True, capture_output=True,
    )
    return path
