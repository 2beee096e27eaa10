import base64
import io
import threading
from typing_extensions import override

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from . import db
from .auth import verify_token
from .blob_storage import (
    VIEW_URL_TTL,
    ObjectHead,
    ObjectStore,
    StoredObject,
    get_object_store,
)
from .db.store import RecordStore
from .errors import GenerationEmptyResultError
from .generation import GeneratedImage, OutfitGenerator, get_outfit_generator
from .main import app, get_session

current_user_id = "user_1"
other_user_id = "user_2"


def make_image_bytes(
    width: int = 400,
    height: int = 300,
    format: str = "JPEG",
    *,
    noise: bool = True,
    pad_to: int | None = None,
    mode: str = "RGB",
) -> bytes:
    """
    Encode a test image.

    Noise keeps the encoder from compressing the image below the minimum upload
    size. ``pad_to`` appends junk after the end of the image data to reach an
    exact byte size, which decoders ignore.
    """
    if noise:
        image = Image.effect_noise((width, height), 64).convert(mode)
    else:
        image = Image.new(mode, (width, height), "red")
    buffer = io.BytesIO()
    image.save(buffer, format=format)
    data = buffer.getvalue()
    if pad_to is not None:
        assert pad_to >= len(data)
        data += b"\0" * (pad_to - len(data))
    return data


def make_png_base64(width: int = 200, height: int = 200) -> str:
    return base64.b64encode(make_image_bytes(width, height, "PNG", noise=False)).decode()


class FakeObjectStore(ObjectStore):
    def __init__(self):
        self.objects: dict[str, tuple[bytes, str, dict[str, str]]] = {}
        self.fail_puts = False
        # Puts beyond this many successful ones fail
        self.successful_put_limit: int | None = None
        self.closed = False
        self._lock = threading.Lock()

    @override
    def put(self, data, key, content_type, metadata=None) -> StoredObject:
        with self._lock:
            if self.fail_puts or (
                self.successful_put_limit is not None
                and len(self.objects) >= self.successful_put_limit
            ):
                return StoredObject(success=False, key=key, error="storage unavailable")
            self.objects[key] = (data, content_type, metadata or {})
        return StoredObject(
            success=True,
            key=key,
            url=f"https://storage.test/{key}",
            size=len(data),
            content_type=content_type,
        )

    @override
    def get_temporary_access(
        self, key, ttl=VIEW_URL_TTL, *, download_filename=None
    ) -> str | None:
        if key not in self.objects:
            return None
        url = f"https://storage.test/{key}?expires={ttl}"
        if download_filename is not None:
            url += f"&download={download_filename}"
        return url

    @override
    def delete(self, key) -> bool:
        return self.objects.pop(key, None) is not None

    @override
    def exists(self, key) -> bool:
        return key in self.objects

    @override
    def head(self, key) -> ObjectHead | None:
        if key not in self.objects:
            return None
        data, content_type, metadata = self.objects[key]
        return ObjectHead(
            size=len(data), content_type=content_type, last_modified=None, metadata=metadata
        )

    @override
    def close(self) -> None:
        self.closed = True


class FakeOutfitGenerator(OutfitGenerator):
    def __init__(self):
        self.description = "A red wool jacket with brass buttons and dark slim jeans."
        self.image: GeneratedImage | None = GeneratedImage(
            data=make_png_base64(), mime_type="image/png"
        )
        self.explanation: str | None = "The jacket would sit well on the shoulders."
        self.error: Exception | None = None
        self.calls: list[str] = []

    @override
    def describe_outfit(self, image, mime_type) -> str:
        self.calls.append("describe_outfit")
        if self.error is not None:
            raise self.error
        return self.description

    @override
    def generate_swap(self, person_image, mime_type, description) -> GeneratedImage:
        self.calls.append("generate_swap")
        if self.image is None:
            raise GenerationEmptyResultError("The AI model did not return an image.")
        return self.image

    @override
    def explain_style(self, person_image, mime_type, description) -> str | None:
        self.calls.append("explain_style")
        return self.explanation


@pytest.fixture(name="session")
def session_fixture():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture(name="store")
def store_fixture(session: Session):
    return RecordStore(session)


@pytest.fixture(name="object_store")
def object_store_fixture():
    return FakeObjectStore()


@pytest.fixture(name="generator")
def generator_fixture():
    return FakeOutfitGenerator()


@pytest.fixture(name="user")
def user_fixture(store: RecordStore) -> db.User:
    user, _ = store.upsert_user(current_user_id, email="one@example.com", name="One")
    return user


@pytest.fixture(name="other_user")
def other_user_fixture(store: RecordStore) -> db.User:
    user, _ = store.upsert_user(other_user_id, email="two@example.com", name="Two")
    return user


@pytest.fixture(name="client")
def client_fixture(
    session: Session, object_store: FakeObjectStore, generator: FakeOutfitGenerator
):
    def get_session_override():
        return session

    def verify_token_override():
        return {"sub": current_user_id}

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[verify_token] = verify_token_override
    app.dependency_overrides[get_object_store] = lambda: object_store
    app.dependency_overrides[get_outfit_generator] = lambda: generator

    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
