import logging
import math
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, Literal
from uuid import UUID

import uvicorn
from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    Security,
    UploadFile,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from svix.webhooks import Webhook, WebhookVerificationError

from . import db
from .auth import verify_token
from .blob_storage import DOWNLOAD_URL_TTL, VIEW_URL_TTL, ObjectStore, get_object_store
from .db.store import RecordStore
from .errors import (
    ForbiddenError,
    GenerationEmptyResultError,
    NotFoundError,
    UpstreamServiceError,
    ValidationError,
    VestyError,
)
from .generation import OutfitGenerator, get_outfit_generator
from .settings import Settings, get_settings
from .swapping import (
    OutfitSwapper,
    SourceUpload,
    create_image_record,
    prepare_image,
    put_prepared_image,
)

settings = get_settings()

logging.basicConfig(
    level=logging.INFO if settings.is_production else logging.DEBUG,
    format="%(asctime)s.%(msecs)03d %(levelname)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

STARTED_AT = time.monotonic()

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def get_session():
    with Session(db.get_engine()) as session:
        yield session


def get_record_store(session: Session = Depends(get_session)) -> RecordStore:
    return RecordStore(session)


def _close_cached(factory) -> None:
    if factory.cache_info().currsize:
        factory().close()
        factory.cache_clear()


@asynccontextmanager
async def lifespan(app: FastAPI):
    db.create_db_and_tables()
    yield
    _close_cached(get_outfit_generator)
    _close_cached(get_object_store)
    db.dispose_engine()


def custom_generate_unique_id(route: APIRoute):
    # NOTE: this means route names (the name of the function decorated with @app.<method>) must be unique
    return route.name


app = FastAPI(
    title="Vesty",
    lifespan=lifespan,
    generate_unique_id_function=custom_generate_unique_id,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logging.info(
        f"{request.method} {request.url.path} {response.status_code} {duration_ms:.0f}ms"
    )
    return response


def error_body(error: VestyError) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": error.message}
    if error.details:
        body["details"] = error.details
    if isinstance(error, ValidationError):
        body["reason"] = error.reason
    if isinstance(error, GenerationEmptyResultError) and error.explanation:
        body["explanation"] = error.explanation
    return body


@app.exception_handler(VestyError)
def handle_vesty_error(request: Request, exc: VestyError) -> JSONResponse:
    if exc.status_code >= 500:
        logging.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.details})")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


@app.exception_handler(StarletteHTTPException)
def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"success": False, "error": "Invalid request.", "details": details},
    )


@app.exception_handler(Exception)
def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logging.exception(f"Unhandled error on {request.method} {request.url.path}")
    content: dict[str, Any] = {"success": False, "error": "Internal server error"}
    if not get_settings().is_production:
        content["details"] = str(exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


def get_current_user(
    *,
    jwt_payload: dict[str, Any] = Security(verify_token),
    store: RecordStore = Depends(get_record_store),
) -> db.User:
    user, _ = store.upsert_user(
        jwt_payload["sub"],
        email=jwt_payload.get("email"),
        name=jwt_payload.get("name"),
    )
    return user


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadMetadata(ApiModel):
    width: int
    height: int
    format: str
    original_size: int
    optimized_size: int
    compression_ratio: float


class UploadedImage(ApiModel):
    id: UUID
    type: db.ImageType
    filename: str | None
    url: str
    metadata: UploadMetadata


class UploadResponse(ApiModel):
    success: bool = True
    data: UploadedImage


class ImageSummary(ApiModel):
    id: UUID
    type: db.ImageType
    url: str
    filename: str | None
    file_size: int | None
    content_type: str | None
    width: int | None
    height: int | None
    swap_id: UUID | None
    created_at: datetime
    updated_at: datetime


class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    pages: int


class ImageList(ApiModel):
    images: list[ImageSummary]
    pagination: Pagination


class MessageResponse(ApiModel):
    success: bool = True
    message: str


class SwapResponse(ApiModel):
    success: bool = True
    swap_id: UUID
    result_image_id: UUID | None
    generated_image_url: str | None
    message: str


class SwapSummary(ApiModel):
    id: UUID
    created_at: datetime
    status: db.SwapStatus
    result_image_id: UUID | None
    generated_image_url: str | None
    error: str | None


class SwapList(ApiModel):
    success: bool = True
    swaps: list[SwapSummary]
    total: int


class PresignedUrlResponse(ApiModel):
    success: bool = True
    url: str
    expires_in: int
    action: Literal["view", "download"]
    filename: str


class UserProfile(ApiModel):
    id: str
    email: str | None
    name: str | None
    created_at: datetime
    updated_at: datetime


class UserStats(ApiModel):
    total_images: int
    total_swaps: int
    completed_swaps: int
    pending_swaps: int


class UserResponse(ApiModel):
    success: bool = True
    user: UserProfile
    stats: UserStats


def _image_summary(image: db.Image) -> ImageSummary:
    return ImageSummary(
        id=image.id,
        type=image.type,
        url=image.url,
        filename=image.filename,
        file_size=image.file_size,
        content_type=image.content_type,
        width=image.width,
        height=image.height,
        swap_id=image.swap_id,
        created_at=image.created_at,
        updated_at=image.updated_at,
    )


def _read_upload(upload: UploadFile) -> SourceUpload:
    return SourceUpload(
        data=upload.file.read(),
        content_type=upload.content_type,
        filename=upload.filename,
    )


# All routes on this router require authentication
router = APIRouter(prefix="/api", dependencies=[Security(verify_token)])


@router.post("/upload")
def upload_image(
    *,
    image: Annotated[UploadFile | None, File()] = None,
    type: Annotated[Literal["SOURCE_PERSON", "SOURCE_OUTFIT"], Form()] = "SOURCE_PERSON",
    store: RecordStore = Depends(get_record_store),
    object_store: ObjectStore = Depends(get_object_store),
    current_user: db.User = Depends(get_current_user),
) -> UploadResponse:
    if image is None:
        raise ValidationError("No file provided.", reason="missing_file")

    upload = _read_upload(image)
    logging.info(f"Received {upload.filename!r} ({len(upload.data)} bytes) from {current_user.id!r}")
    prepared = prepare_image(upload, db.ImageType(type))

    stored = put_prepared_image(object_store, current_user.id, prepared)
    if not stored.success:
        raise UpstreamServiceError("Upload failed.", service="storage", details=stored.error)

    record = create_image_record(store, current_user.id, prepared, stored)
    return UploadResponse(
        data=UploadedImage(
            id=record.id,
            type=record.type,
            filename=record.filename,
            url=record.url,
            metadata=UploadMetadata(
                width=prepared.metadata.width,
                height=prepared.metadata.height,
                format=prepared.metadata.format,
                original_size=prepared.metadata.original_size,
                optimized_size=prepared.metadata.size,
                compression_ratio=prepared.metadata.compression_ratio,
            ),
        )
    )


@router.get("/upload", name="list_uploads")
@router.get("/images")
def list_images(
    *,
    type: db.ImageType | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    store: RecordStore = Depends(get_record_store),
    current_user: db.User = Depends(get_current_user),
) -> ImageList:
    images, total = store.list_images(
        current_user.id, type=type, offset=(page - 1) * limit, limit=limit
    )
    return ImageList(
        images=[_image_summary(image) for image in images],
        pagination=Pagination(
            page=page, limit=limit, total=total, pages=math.ceil(total / limit)
        ),
    )


@router.delete("/upload")
def delete_image(
    *,
    id: UUID,
    store: RecordStore = Depends(get_record_store),
    object_store: ObjectStore = Depends(get_object_store),
    current_user: db.User = Depends(get_current_user),
) -> MessageResponse:
    image = store.get_owned_image(id, current_user.id)
    if image is None:
        # Return 404 if the image doesn't exist or doesn't belong to the user
        raise NotFoundError("Image not found.")

    storage_key = image.storage_key
    store.delete_image(image.id)
    if storage_key and not object_store.delete(storage_key):
        logging.warning(f"Deleted image {id} but its object {storage_key} is still stored")

    return MessageResponse(message="Image deleted successfully")


@router.post("/swap")
def create_swap(
    *,
    outfit_image: Annotated[UploadFile | None, File(alias="outfitImage")] = None,
    person_image: Annotated[UploadFile | None, File(alias="personImage")] = None,
    store: RecordStore = Depends(get_record_store),
    object_store: ObjectStore = Depends(get_object_store),
    generator: OutfitGenerator = Depends(get_outfit_generator),
    current_user: db.User = Depends(get_current_user),
) -> SwapResponse:
    if outfit_image is None or person_image is None:
        raise ValidationError(
            "Both outfit image and person image are required.", reason="missing_file"
        )

    swapper = OutfitSwapper(store, object_store, generator)
    outcome = swapper.perform_swap(
        current_user.id, _read_upload(person_image), _read_upload(outfit_image)
    )

    if not outcome.success:
        assert outcome.error is not None
        content = error_body(outcome.error)
        content["swapId"] = str(outcome.swap.id) if outcome.swap else None
        return JSONResponse(status_code=outcome.error.status_code, content=content)  # type: ignore

    assert outcome.swap is not None and outcome.result_image is not None
    return SwapResponse(
        swap_id=outcome.swap.id,
        result_image_id=outcome.result_image.id,
        generated_image_url=outcome.generated_image_url,
        message=outcome.message,
    )


@router.get("/swap")
def list_swaps(
    *,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    offset: Annotated[int, Query(ge=0)] = 0,
    status: db.SwapStatus | None = None,
    store: RecordStore = Depends(get_record_store),
    object_store: ObjectStore = Depends(get_object_store),
    current_user: db.User = Depends(get_current_user),
) -> SwapList:
    swaps, total = store.list_swaps(
        current_user.id, status=status, offset=offset, limit=limit
    )

    summaries: list[SwapSummary] = []
    for swap in swaps:
        generated_image_url = None
        result_image = swap.result_image
        if result_image is not None and result_image.storage_key:
            generated_image_url = (
                object_store.get_temporary_access(result_image.storage_key)
                or result_image.url
            )
        summaries.append(
            SwapSummary(
                id=swap.id,
                created_at=swap.created_at,
                status=swap.status,
                result_image_id=swap.result_image_id,
                generated_image_url=generated_image_url,
                error=swap.error,
            )
        )
    return SwapList(swaps=summaries, total=total)


@router.get("/images/presigned")
def get_presigned_url(
    *,
    image_id: Annotated[UUID, Query(alias="imageId")],
    action: Literal["view", "download"] = "view",
    store: RecordStore = Depends(get_record_store),
    object_store: ObjectStore = Depends(get_object_store),
    current_user: db.User = Depends(get_current_user),
) -> PresignedUrlResponse:
    image = store.get_image(image_id)
    if image is None:
        raise NotFoundError("Image not found.")
    if image.user_id != current_user.id:
        raise ForbiddenError()
    if not image.storage_key:
        raise VestyError("Image has no stored object.", details=f"image {image.id}")

    filename = image.filename or image.storage_key.rsplit("/", 1)[-1]
    if action == "download":
        expires_in = DOWNLOAD_URL_TTL
        url = object_store.get_temporary_access(
            image.storage_key, expires_in, download_filename=filename
        )
    else:
        expires_in = VIEW_URL_TTL
        url = object_store.get_temporary_access(image.storage_key, expires_in)

    if url is None:
        raise UpstreamServiceError("Failed to generate secure URL.", service="storage")

    return PresignedUrlResponse(
        url=url, expires_in=expires_in, action=action, filename=filename
    )


@router.get("/user")
def get_me(
    *,
    store: RecordStore = Depends(get_record_store),
    current_user: db.User = Depends(get_current_user),
) -> UserResponse:
    stats = store.user_stats(current_user.id)
    return UserResponse(
        user=UserProfile(
            id=current_user.id,
            email=current_user.email,
            name=current_user.name,
            created_at=current_user.created_at,
            updated_at=current_user.updated_at,
        ),
        stats=UserStats(
            total_images=stats["totalImages"],
            total_swaps=stats["totalSwaps"],
            completed_swaps=stats["completedSwaps"],
            pending_swaps=stats["pendingSwaps"],
        ),
    )


app.include_router(router)


@app.get("/api/health")
def health(
    *,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    start = time.perf_counter()

    try:
        session.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as e:
        logging.error(f"Database health check failed: {e}")
        database = "disconnected"

    services = {
        "database": database,
        "storage": "connected" if settings.storage_configured else "disconnected",
        "ai": "connected" if settings.ai_configured else "disconnected",
    }
    healthy = all(value == "connected" for value in services.values())

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - STARTED_AT, 3),
            "environment": settings.APP_ENV,
            "services": services,
            "responseTime": f"{(time.perf_counter() - start) * 1000:.0f}ms",
        },
        headers=NO_CACHE_HEADERS,
    )


@app.head("/api/health")
def health_head() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=NO_CACHE_HEADERS)


async def get_raw_body(request: Request) -> bytes:
    return await request.body()


def _full_name(data: dict[str, Any]) -> str | None:
    parts = [data.get("first_name"), data.get("last_name")]
    return " ".join(part for part in parts if part) or None


def _primary_email(data: dict[str, Any]) -> str | None:
    addresses = data.get("email_addresses") or []
    if not addresses:
        return None
    return addresses[0].get("email_address") or None


@app.post("/api/webhooks/identity-provider")
def handle_identity_webhook(
    *,
    payload: bytes = Depends(get_raw_body),
    svix_id: Annotated[str | None, Header(alias="svix-id")] = None,
    svix_timestamp: Annotated[str | None, Header(alias="svix-timestamp")] = None,
    svix_signature: Annotated[str | None, Header(alias="svix-signature")] = None,
    store: RecordStore = Depends(get_record_store),
    object_store: ObjectStore = Depends(get_object_store),
    settings: Settings = Depends(get_settings),
) -> MessageResponse:
    if not svix_id or not svix_timestamp or not svix_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing svix headers."
        )
    if not settings.WEBHOOK_SECRET:
        raise VestyError("Webhook secret is not configured.")

    try:
        event = Webhook(settings.WEBHOOK_SECRET).verify(
            payload,
            {
                "svix-id": svix_id,
                "svix-timestamp": svix_timestamp,
                "svix-signature": svix_signature,
            },
        )
    except WebhookVerificationError as e:
        logging.warning(f"Rejected webhook {svix_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook verification failed."
        )

    event_type = event.get("type")
    data = event.get("data") or {}
    user_id = data.get("id")
    logging.info(f"Webhook received: {event_type} for user {user_id!r}")

    if event_type in ("user.created", "user.updated") and user_id:
        store.upsert_user(user_id, email=_primary_email(data), name=_full_name(data))
    elif event_type == "user.deleted" and user_id:
        for storage_key in store.delete_user(user_id):
            if not object_store.delete(storage_key):
                logging.warning(f"Could not delete object {storage_key} of user {user_id!r}")
    else:
        logging.info(f"Ignoring webhook event {event_type}")

    return MessageResponse(message="Webhook processed successfully")


def serve():
    uvicorn.run("vesty.main:app", host=settings.HOST, port=settings.PORT)
