import asyncio
import io
import shutil

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from conftest import FAKE_JPEG, FakeEngine
from vidframe import config as c, server
from vidframe.types import FrameError


@pytest.fixture
def conf(tmp_path):
    return c.Config(
        api=c.ApiConfig(thumbnail_width=96, thumbnail_height=72),
        framer=c.FramerConfig(max_processes=2),
        storage=c.StorageConfig(local_directory=tmp_path / "videos"),
    )


@pytest.fixture
def client(conf, engine):
    app = server.create_app(conf, engine=engine)
    with TestClient(app) as client:
        yield client


def test_frame_returns_jpeg(client, engine, conf):
    resp = client.get("/video/clip.mp4/frame/5?width=64")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/jpeg"
    assert resp.content == FAKE_JPEG
    assert engine.calls == [(str(conf.storage.local_directory / "clip.mp4"), 5, 64, 0, False)]


def test_frame_without_size_keeps_original(client, engine):
    resp = client.get("/video/clip.mp4/frame/0")
    assert resp.status_code == 200
    assert engine.calls[0][1:] == (0, 0, 0, False)


def test_thumbnail_uses_configured_size(client, engine):
    resp = client.get("/video/clip.mp4/frame/2/thumbnail")
    assert resp.status_code == 200
    assert engine.calls[0][1:] == (2, 96, 72, True)


@pytest.mark.parametrize("url", [
    "/video/clip.mp4/frame/abc",
    "/video/clip.mp4/frame/-1",
    "/video/clip.mp4/frame/1?width=wide",
    "/video/clip.mp4/frame/1?height=-3",
    "/video/clip.mp4/frame/1.5/thumbnail",
])
def test_frame_rejects_bad_numbers(client, engine, url):
    resp = client.get(url)
    assert resp.status_code == 400
    assert engine.calls == []


def test_frame_out_of_bounds_is_client_error(client, engine):
    engine.data = b""
    resp = client.get("/video/clip.mp4/frame/100000")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "frame index out of bounds"


def test_frame_engine_error_is_server_error(client, engine):
    engine.error = FrameError("clip.mp4", 1, 1, "clip.mp4: No such file or directory")
    resp = client.get("/video/clip.mp4/frame/1")
    assert resp.status_code == 500
    assert resp.json()["detail"].startswith("ffmpeg error:")


def test_videos_empty_directory(client):
    resp = client.get("/videos")
    assert resp.status_code == 200
    assert resp.json() == {"files": []}


def test_upload_then_list_and_download(client):
    resp = client.post("/upload", files={"filename": ("clip.mp4", b"\x00\x00\x00\x1cftypisom", "video/mp4")})
    assert resp.status_code == 201

    resp = client.get("/videos")
    assert resp.json() == {"files": [{"name": "clip.mp4", "size": 12}]}

    resp = client.get("/video/clip.mp4")
    assert resp.status_code == 200
    assert resp.content == b"\x00\x00\x00\x1cftypisom"


def test_upload_existing_name_rejected(client):
    files = {"filename": ("clip.mp4", b"one", "video/mp4")}
    assert client.post("/upload", files=files).status_code == 201
    resp = client.post("/upload", files={"filename": ("clip.mp4", b"two", "video/mp4")})
    assert resp.status_code == 400
    assert client.get("/video/clip.mp4").content == b"one"


def test_upload_without_file_field(client):
    resp = client.post("/upload", files={"other": ("clip.mp4", b"x", "video/mp4")})
    assert resp.status_code == 400

    resp = client.post("/upload", data={"filename": "clip.mp4"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "request does not contain a filename"

    resp = client.post("/upload", files={"other": ("x.txt", b"x")}, data={"filename": "clip.mp4"})
    assert resp.status_code == 400
    assert client.get("/videos").json() == {"files": []}


def test_upload_strips_directories(client, conf):
    resp = client.post("/upload", files={"filename": ("../../escape.mp4", b"x", "video/mp4")})
    assert resp.status_code == 201
    assert (conf.storage.local_directory / "escape.mp4").exists()


def test_video_404_for_unknown(client):
    assert client.get("/video/nonexistent.mp4").status_code == 404


def test_thumbnail_with_real_ffmpeg(tmp_path, sample_video):
    conf = c.Config(
        api=c.ApiConfig(thumbnail_width=64, thumbnail_height=64),
        storage=c.StorageConfig(local_directory=tmp_path / "videos"),
    )
    app = server.create_app(conf)
    shutil.copy(sample_video, conf.storage.local_directory / "sample.mp4")
    with TestClient(app) as client:
        resp = client.get("/video/sample.mp4/frame/0/thumbnail")
        assert resp.status_code == 200
        assert Image.open(io.BytesIO(resp.content)).size == (64, 64)

        resp = client.get("/video/sample.mp4/frame/999")
        assert resp.status_code == 400

        resp = client.get("/video/missing.mp4/frame/0")
        assert resp.status_code == 500


def test_client_gone_before_result_is_context_closed(conf, monkeypatch):
    engine = FakeEngine(gated=True)

    async def disconnect_soon(request, cancel):
        await asyncio.sleep(0.05)
        cancel.set()

    monkeypatch.setattr(server, "_watch_disconnect", disconnect_soon)
    app = server.create_app(conf, engine=engine)
    with TestClient(app) as client:
        resp = client.get("/video/clip.mp4/frame/4")
        assert resp.status_code == 500
        assert resp.json()["detail"] == "context closed"
        assert engine.started == [4]


def test_watch_disconnect_sets_cancel(monkeypatch):
    monkeypatch.setattr(server, "DISCONNECT_POLL_SECONDS", 0.001)

    class Gone:
        polls = 0

        async def is_disconnected(self):
            self.polls += 1
            return self.polls >= 3

    async def scenario():
        request = Gone()
        cancel = asyncio.Event()
        await asyncio.wait_for(server._watch_disconnect(request, cancel), 1)
        return request, cancel

    request, cancel = asyncio.run(scenario())
    assert cancel.is_set()
    assert request.polls == 3
