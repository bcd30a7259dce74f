import asyncio
import contextlib
import logging

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse, Response
from pydantic import BaseModel
from starlette.datastructures import UploadFile

from vidframe import config as c
from vidframe.dispatcher import Dispatcher, Engine, TokenPool
from vidframe.storage import Storage

CHUNK_SIZE = 1 << 20
DISCONNECT_POLL_SECONDS = 0.25

log = logging.getLogger(__name__)


class FileProperties(BaseModel):
    name: str
    size: int


class FilesResponse(BaseModel):
    files: list[FileProperties]


def _parse_non_negative(name: str, raw: str | None) -> int:
    if raw is None or raw == "":
        return 0
    if not (raw.isascii() and raw.isdigit()):
        raise HTTPException(status_code=400, detail=f"{name} parsing error: {raw!r} is not a non-negative integer")
    return int(raw)


async def _watch_disconnect(request: Request, cancel: asyncio.Event):
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
    cancel.set()


def create_app(conf: c.Config | None = None, engine: Engine | None = None) -> FastAPI:
    conf = conf or c.Config()
    store = Storage(conf.storage.local_directory)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        dispatcher = Dispatcher(
            TokenPool(conf.framer.max_processes),
            engine=engine,
            queue_size=conf.framer.queue_size,
        )
        app.state.dispatcher = dispatcher
        runner = asyncio.create_task(dispatcher.run())
        log.info("Service started, serving %s", store.directory)
        try:
            yield
        finally:
            log.info("Shutdown signal received")
            dispatcher.stop()
            await runner
            log.info("Service exited gracefully")

    app = FastAPI(title="Video Frame Service", lifespan=lifespan)
    app.state.storage = store

    def _path(filename: str):
        try:
            return store.path(filename)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    async def _frame(
        request: Request, filename: str, index: str, width: int, height: int, thumbnail: bool,
    ) -> Response:
        frame_index = _parse_non_negative("frame index", index)
        path = _path(filename)
        dispatcher: Dispatcher = request.app.state.dispatcher

        cancel = asyncio.Event()
        watcher = asyncio.create_task(_watch_disconnect(request, cancel))
        try:
            channel = await dispatcher.submit(path, frame_index, width, height, thumbnail, cancel=cancel)
            res = await channel.receive(cancel=cancel)
        finally:
            watcher.cancel()

        if res is None:
            raise HTTPException(status_code=500, detail="context closed")
        if res.error is not None:
            raise HTTPException(status_code=500, detail=f"ffmpeg error: {res.error}")
        if not res.data:
            raise HTTPException(status_code=400, detail="frame index out of bounds")
        return Response(content=res.data, media_type="image/jpeg")

    @app.get("/video/{filename}")
    def video(filename: str):
        path = _path(filename)
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Video not found")
        return FileResponse(str(path))

    @app.get("/video/{filename}/frame/{index}")
    async def frame(
        request: Request,
        filename: str,
        index: str,
        width: str | None = Query(default=None),
        height: str | None = Query(default=None),
    ):
        w = _parse_non_negative("width", width)
        h = _parse_non_negative("height", height)
        return await _frame(request, filename, index, w, h, thumbnail=False)

    @app.get("/video/{filename}/frame/{index}/thumbnail")
    async def thumbnail(request: Request, filename: str, index: str):
        return await _frame(
            request, filename, index,
            conf.api.thumbnail_width, conf.api.thumbnail_height, thumbnail=True,
        )

    @app.get("/videos", response_model=FilesResponse)
    def videos():
        try:
            files = store.list_files()
        except OSError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return FilesResponse(files=[FileProperties(name=f.name, size=f.size) for f in files])

    @app.post("/upload", status_code=201)
    async def upload(request: Request):
        # a plain text "filename" field is as unusable as a missing one
        async with request.form() as form:
            filename = form.get("filename")
            if not isinstance(filename, UploadFile) or not filename.filename:
                raise HTTPException(status_code=400, detail="request does not contain a filename")
            try:
                dest = store.create(filename.filename)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            except FileExistsError as exc:
                raise HTTPException(status_code=400, detail="file exists") from exc
            except OSError as exc:
                raise HTTPException(status_code=500, detail=str(exc)) from exc

            path = store.path(filename.filename)
            try:
                with dest:
                    while chunk := await filename.read(CHUNK_SIZE):
                        dest.write(chunk)
            except OSError as exc:
                path.unlink(missing_ok=True)
                raise HTTPException(status_code=500, detail=str(exc)) from exc
        log.info("Stored upload %s", path.name)
        return Response(status_code=201)

    return app
