import asyncio
import logging
import math
import mimetypes
import shutil
from typing import Optional

from fastapi import FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from imagestore.config import Settings
from imagestore.dedup import DedupIndex, InMemoryDedupIndex
from imagestore.errors import ImageStoreError, InputError, ProcessingError
from imagestore.models import (
    HealthResponse,
    ImageEntry,
    ImageListResponse,
    MutationResponse,
    UploadResponse,
)
from imagestore.service import ImageService, StagedFile
from imagestore.storage import ImageStore

logger = logging.getLogger("imagestore.api")


def _number(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise InputError("x and y must be numbers.")
    try:
        number = float(value)
    except ValueError as exc:
        raise InputError("x and y must be numbers.") from exc
    if not math.isfinite(number):
        raise InputError("x and y must be numbers.")
    return number


async def _json_body(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError as exc:
        raise InputError("Request body must be a JSON object.") from exc
    if not isinstance(data, dict):
        raise InputError("Request body must be a JSON object.")
    return data


def _stage_upload(upload: UploadFile, store: ImageStore) -> StagedFile:
    staged = StagedFile(path=store.staging_path(upload.filename), original_name=upload.filename or "upload")
    try:
        with open(staged.path, "wb") as out:
            shutil.copyfileobj(upload.file, out)
    except OSError as exc:
        store.discard_staged(staged.path)
        raise ProcessingError("Error uploading image", exc) from exc
    return staged


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ImageStoreError)
    async def image_store_error_handler(request: Request, exc: ImageStoreError):
        if exc.http_status >= 500:
            logger.error("%s on %s: %s", exc.message, request.url.path, exc.to_response().get("details"))
        else:
            logger.info("%s on %s: %s", exc.http_status, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request parameters.",
                "details": [
                    {"field": ".".join(str(loc) for loc in e["loc"]), "message": e["msg"]}
                    for e in exc.errors()
                ],
            },
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Optional[Settings] = None, index: Optional[DedupIndex] = None) -> FastAPI:
    # --- Environment & Config ---
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    store = ImageStore(settings.image_dir)
    index = index if index is not None else InMemoryDedupIndex()
    service = ImageService(
        store,
        index,
        font_size=settings.font_size,
        padding=settings.padding,
        font_path=settings.font_path,
        jpeg_quality=settings.jpeg_quality,
    )
    logger.info("[startup] Serving images from %s", store.root.resolve())
    if index.volatile:
        logger.info("[startup] Dedup index is in-memory; bindings are lost on restart.")

    # --- App Init ---
    app = FastAPI(title="Image artifact store")
    app.state.settings = settings
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    # --- Middleware ---
    # Images are edited in place, so clients must revalidate.
    @app.middleware("http")
    async def add_cache_control_header(request: Request, call_next):
        response = await call_next(request)
        if request.method == "GET" and request.url.path.startswith("/images/"):
            response.headers["Cache-Control"] = "no-cache"
        return response

    # --- Upload & Fetch ---
    @app.post("/upload", response_model=UploadResponse)
    async def upload_image(image: Optional[UploadFile] = File(None)):
        if image is None or not image.filename:
            raise InputError("No file uploaded")
        staged = await asyncio.to_thread(_stage_upload, image, store)
        record = await service.ingest(staged)
        message = "Image already exists" if record.duplicate else "Image uploaded successfully"
        return UploadResponse(
            message=message,
            imageUrl=settings.image_url(record.identifier),
            filePath=record.identifier,
            duplicate=record.duplicate,
        )

    @app.get("/images/{image_id}")
    async def get_image(image_id: str):
        data = await service.fetch(image_id)
        media_type = mimetypes.guess_type(image_id)[0] or "application/octet-stream"
        return Response(content=data, media_type=media_type)

    # --- Mutations ---
    @app.post("/annotate", response_model=MutationResponse)
    async def annotate_image(request: Request):
        data = await _json_body(request)
        image_id = data.get("imageId")
        text = data.get("text")
        x, y = data.get("x"), data.get("y")
        if not image_id or not text or x is None or y is None:
            raise InputError("imageId, text, x and y are required.")
        await service.annotate(str(image_id), str(text), _number(x), _number(y))
        return MutationResponse(message="Image annotated successfully", imageUrl=settings.image_url(str(image_id)))

    @app.post("/draw", response_model=MutationResponse)
    async def draw_on_image(request: Request):
        data = await _json_body(request)
        image_id = data.get("imageId")
        drawing_data = data.get("drawingData")
        if not image_id or not drawing_data:
            raise InputError("imageId and drawingData are required.")
        x = data.get("x")
        y = data.get("y")
        await service.draw(
            str(image_id),
            str(drawing_data),
            None if x is None else _number(x),
            None if y is None else _number(y),
        )
        return MutationResponse(message="Drawing applied successfully", imageUrl=settings.image_url(str(image_id)))

    # --- Catalog ---
    @app.get("/images", response_model=ImageListResponse)
    async def list_images(offset: int = Query(0, ge=0), limit: Optional[int] = Query(None, ge=1)):
        names = await asyncio.to_thread(service.catalog, offset, limit)
        return ImageListResponse(
            message="Images retrieved successfully",
            images=[ImageEntry(filename=name, url=settings.image_url(name)) for name in names],
        )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        count = await asyncio.to_thread(lambda: sum(1 for _ in store.list()))
        return HealthResponse(
            status="ok",
            images=count,
            dedupEntries=len(index),
            dedupVolatile=index.volatile,
        )

    return app


app = create_app()
