import json
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select
from svix.webhooks import Webhook

from . import db
from .conftest import (
    FakeObjectStore,
    FakeOutfitGenerator,
    current_user_id,
    make_image_bytes,
    other_user_id,
)
from .db.store import RecordStore
from .main import app, get_session
from .settings import Settings, get_settings


def _jpeg(filename: str = "photo.jpg", **kwargs):
    return (filename, make_image_bytes(**kwargs), "image/jpeg")


def _stored_image(
    store: RecordStore,
    object_store: FakeObjectStore,
    user_id: str,
    type: db.ImageType = db.ImageType.SOURCE_PERSON,
    filename: str = "me.jpg",
):
    key = f"images/{user_id}/{uuid4().hex}.jpg"
    stored = object_store.put(b"jpeg", key, "image/jpeg")
    assert stored.url is not None
    return store.create_image(
        user_id=user_id, type=type, url=stored.url, storage_key=key, filename=filename
    )


class TestAuthentication:
    def test_requires_token(self, session: Session):
        # No dependency overrides, so the real token check runs
        client = TestClient(app)
        response = client.get("/api/user")
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_user_is_created_on_first_request(self, session: Session, client: TestClient):
        response = client.get("/api/user")
        assert response.status_code == 200
        assert session.get(db.User, current_user_id) is not None


class TestUpload:
    def test_success(self, session: Session, client: TestClient, object_store: FakeObjectStore):
        # 800x600 JPEG padded to 2 MB
        data = make_image_bytes(800, 600, "JPEG", pad_to=2_000_000)

        response = client.post(
            "/api/upload", files={"image": ("me.jpg", data, "image/jpeg")}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        metadata = body["data"]["metadata"]
        assert metadata["width"] == 800
        assert metadata["height"] == 600
        assert metadata["originalSize"] == 2_000_000
        assert metadata["optimizedSize"] < metadata["originalSize"]
        assert metadata["compressionRatio"] > 0
        assert body["data"]["filename"] == "me.jpg"
        assert body["data"]["type"] == "SOURCE_PERSON"

        image = session.get(db.Image, body["data"]["id"])
        assert image is not None
        assert image.user_id == current_user_id
        assert image.width == 800
        assert image.storage_key in object_store.objects

    def test_outfit_type(self, session: Session, client: TestClient):
        response = client.post(
            "/api/upload",
            files={"image": _jpeg("outfit.jpg")},
            data={"type": "SOURCE_OUTFIT"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["type"] == "SOURCE_OUTFIT"

    def test_result_type_not_allowed(self, session: Session, client: TestClient):
        response = client.post(
            "/api/upload", files={"image": _jpeg()}, data={"type": "RESULT"}
        )
        assert response.status_code == 422
        assert session.exec(select(db.Image)).all() == []

    def test_dimensions_too_small(self, session: Session, client: TestClient):
        data = make_image_bytes(50, 50, "PNG")

        response = client.post(
            "/api/upload", files={"image": ("tiny.png", data, "image/png")}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["reason"] == "dimensions_too_small"
        assert "too small" in body["error"]
        assert session.exec(select(db.Image)).all() == []

    def test_unsupported_type(self, session: Session, client: TestClient):
        data = make_image_bytes(200, 200, "GIF", mode="L")
        response = client.post(
            "/api/upload", files={"image": ("anim.gif", data, "image/gif")}
        )
        assert response.status_code == 400
        assert response.json()["reason"] == "unsupported_type"

    def test_extension_mismatch(self, session: Session, client: TestClient):
        data = make_image_bytes(200, 200, "PNG")
        response = client.post(
            "/api/upload", files={"image": ("photo.jpg", data, "image/png")}
        )
        assert response.status_code == 400
        assert response.json()["reason"] == "unsupported_extension"

    def test_corrupted_image(
        self, session: Session, client: TestClient, object_store: FakeObjectStore
    ):
        data = make_image_bytes(400, 300, "JPEG")
        truncated = data[: len(data) // 2]

        response = client.post(
            "/api/upload", files={"image": ("me.jpg", truncated, "image/jpeg")}
        )

        assert response.status_code == 400
        assert response.json()["reason"] == "unreadable"
        assert session.exec(select(db.Image)).all() == []
        assert object_store.objects == {}

    def test_missing_file(self, session: Session, client: TestClient):
        response = client.post("/api/upload", data={"type": "SOURCE_PERSON"})
        assert response.status_code == 400
        assert response.json()["reason"] == "missing_file"

    def test_storage_failure(
        self, session: Session, client: TestClient, object_store: FakeObjectStore
    ):
        object_store.fail_puts = True
        response = client.post("/api/upload", files={"image": _jpeg()})
        assert response.status_code == 502
        body = response.json()
        assert body["success"] is False
        assert body["details"] == "storage unavailable"
        assert session.exec(select(db.Image)).all() == []


class TestListImages:
    def test_paginated_and_filtered(
        self,
        client: TestClient,
        store: RecordStore,
        object_store: FakeObjectStore,
        user,
        other_user,
    ):
        for _ in range(3):
            _stored_image(store, object_store, user.id, db.ImageType.SOURCE_PERSON)
        outfit = _stored_image(store, object_store, user.id, db.ImageType.SOURCE_OUTFIT)
        _stored_image(store, object_store, other_user.id)

        response = client.get("/api/images", params={"page": 1, "limit": 2})
        assert response.status_code == 200
        body = response.json()
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 4, "pages": 2}
        assert len(body["images"]) == 2
        assert body["images"][0]["id"] == str(outfit.id)

        response = client.get("/api/upload", params={"type": "SOURCE_OUTFIT"})
        body = response.json()
        assert body["pagination"]["total"] == 1
        assert body["images"][0]["type"] == "SOURCE_OUTFIT"
        assert "fileSize" in body["images"][0]


class TestDeleteImage:
    def test_success(
        self,
        session: Session,
        client: TestClient,
        store: RecordStore,
        object_store: FakeObjectStore,
        user,
    ):
        image = _stored_image(store, object_store, user.id)
        image_id, storage_key = image.id, image.storage_key

        response = client.delete("/api/upload", params={"id": str(image_id)})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert session.get(db.Image, image_id) is None
        assert storage_key not in object_store.objects

    def test_other_users_image(
        self,
        client: TestClient,
        store: RecordStore,
        object_store: FakeObjectStore,
        user,
        other_user,
    ):
        image = _stored_image(store, object_store, other_user.id)

        response = client.delete("/api/upload", params={"id": str(image.id)})

        # Indistinguishable from an image that does not exist
        assert response.status_code == 404
        assert store.get_image(image.id) is not None

    def test_not_found(self, client: TestClient, user):
        response = client.delete("/api/upload", params={"id": str(uuid4())})
        assert response.status_code == 404

    def test_image_in_use(
        self, client: TestClient, store: RecordStore, object_store: FakeObjectStore, user
    ):
        person = _stored_image(store, object_store, user.id, db.ImageType.SOURCE_PERSON)
        outfit = _stored_image(store, object_store, user.id, db.ImageType.SOURCE_OUTFIT)
        store.create_swap(
            user_id=user.id, person_image_id=person.id, outfit_image_id=outfit.id
        )

        response = client.delete("/api/upload", params={"id": str(person.id)})

        assert response.status_code == 409
        assert response.json()["success"] is False


class TestSwap:
    def test_completed(
        self,
        session: Session,
        client: TestClient,
        object_store: FakeObjectStore,
        generator: FakeOutfitGenerator,
    ):
        response = client.post(
            "/api/swap",
            files={
                "outfitImage": _jpeg("outfit.jpg"),
                "personImage": _jpeg("me.jpg"),
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["generatedImageUrl"].startswith("https://storage.test/")
        assert body["message"] == "Outfit swap completed successfully"

        swap = session.get(db.Swap, body["swapId"])
        assert swap is not None
        assert swap.status == db.SwapStatus.COMPLETED
        assert swap.result_image_id is not None
        assert str(swap.result_image_id) == body["resultImageId"]
        assert swap.processing_completed_at is not None

    def test_no_image_generated(
        self, session: Session, client: TestClient, generator: FakeOutfitGenerator
    ):
        generator.image = None

        response = client.post(
            "/api/swap",
            files={
                "outfitImage": _jpeg("outfit.jpg"),
                "personImage": _jpeg("me.jpg"),
            },
        )

        assert response.status_code == 502
        body = response.json()
        assert body["success"] is False
        assert body["error"]
        assert body["explanation"] == generator.explanation

        swap = session.get(db.Swap, body["swapId"])
        assert swap is not None
        assert swap.status == db.SwapStatus.FAILED
        assert swap.error
        assert swap.result_image_id is None
        results = session.exec(
            select(db.Image).where(db.Image.type == db.ImageType.RESULT)
        ).all()
        assert results == []

    def test_missing_image(self, session: Session, client: TestClient):
        response = client.post("/api/swap", files={"outfitImage": _jpeg("outfit.jpg")})
        assert response.status_code == 400
        assert response.json()["reason"] == "missing_file"

    def test_invalid_image(self, session: Session, client: TestClient):
        response = client.post(
            "/api/swap",
            files={
                "outfitImage": ("outfit.png", make_image_bytes(50, 50, "PNG"), "image/png"),
                "personImage": _jpeg("me.jpg"),
            },
        )
        assert response.status_code == 400
        assert session.exec(select(db.Swap)).all() == []
        assert session.exec(select(db.Image)).all() == []


class TestListSwaps:
    def _swap(self, store: RecordStore, object_store: FakeObjectStore, user_id: str):
        person = _stored_image(store, object_store, user_id, db.ImageType.SOURCE_PERSON)
        outfit = _stored_image(store, object_store, user_id, db.ImageType.SOURCE_OUTFIT)
        return store.create_swap(
            user_id=user_id, person_image_id=person.id, outfit_image_id=outfit.id
        )

    def test_lists_own_swaps(
        self,
        client: TestClient,
        store: RecordStore,
        object_store: FakeObjectStore,
        user,
        other_user,
    ):
        completed = self._swap(store, object_store, user.id)
        store.update_swap_status(completed.id, db.SwapStatus.PROCESSING)
        result = _stored_image(store, object_store, user.id, db.ImageType.RESULT)
        store.set_swap_result(completed.id, result.id)
        store.update_swap_status(completed.id, db.SwapStatus.COMPLETED)
        pending = self._swap(store, object_store, user.id)
        self._swap(store, object_store, other_user.id)

        response = client.get("/api/swap")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["total"] == 2
        assert [swap["id"] for swap in body["swaps"]] == [str(pending.id), str(completed.id)]
        assert body["swaps"][0]["generatedImageUrl"] is None
        assert body["swaps"][1]["generatedImageUrl"].startswith("https://storage.test/")

        response = client.get("/api/swap", params={"status": "COMPLETED"})
        body = response.json()
        assert body["total"] == 1
        assert body["swaps"][0]["status"] == "COMPLETED"

        response = client.get("/api/swap", params={"limit": 1, "offset": 1})
        body = response.json()
        assert body["total"] == 2
        assert [swap["id"] for swap in body["swaps"]] == [str(completed.id)]


class TestPresignedUrl:
    def test_view_and_download(
        self, client: TestClient, store: RecordStore, object_store: FakeObjectStore, user
    ):
        image = _stored_image(store, object_store, user.id, filename="me.jpg")

        view = client.get(
            "/api/images/presigned", params={"imageId": str(image.id), "action": "view"}
        ).json()
        download = client.get(
            "/api/images/presigned",
            params={"imageId": str(image.id), "action": "download"},
        ).json()

        assert view["success"] is True
        assert download["success"] is True
        assert view["url"] != download["url"]
        assert view["expiresIn"] == 3600
        assert download["expiresIn"] == 300
        assert view["action"] == "view"
        assert download["action"] == "download"
        assert download["filename"] == "me.jpg"

    def test_defaults_to_view(
        self, client: TestClient, store: RecordStore, object_store: FakeObjectStore, user
    ):
        image = _stored_image(store, object_store, user.id)
        response = client.get("/api/images/presigned", params={"imageId": str(image.id)})
        assert response.json()["expiresIn"] == 3600

    def test_other_users_image(
        self,
        client: TestClient,
        store: RecordStore,
        object_store: FakeObjectStore,
        user,
        other_user,
    ):
        image = _stored_image(store, object_store, other_user.id)
        response = client.get("/api/images/presigned", params={"imageId": str(image.id)})
        assert response.status_code == 403
        assert response.json()["success"] is False

    def test_not_found(self, client: TestClient, user):
        response = client.get("/api/images/presigned", params={"imageId": str(uuid4())})
        assert response.status_code == 404

    def test_invalid_action(
        self, client: TestClient, store: RecordStore, object_store: FakeObjectStore, user
    ):
        image = _stored_image(store, object_store, user.id)
        response = client.get(
            "/api/images/presigned", params={"imageId": str(image.id), "action": "share"}
        )
        assert response.status_code == 422


class TestGetUser:
    def test_profile_and_stats(
        self, client: TestClient, store: RecordStore, object_store: FakeObjectStore, user
    ):
        _stored_image(store, object_store, user.id)

        response = client.get("/api/user")

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["id"] == current_user_id
        assert body["user"]["email"] == "one@example.com"
        assert body["stats"] == {
            "totalImages": 1,
            "totalSwaps": 0,
            "completedSwaps": 0,
            "pendingSwaps": 0,
        }


class TestHealth:
    @pytest.fixture(name="configured")
    def configured_fixture(self):
        app.dependency_overrides[get_settings] = lambda: Settings(
            AWS_ACCESS_KEY_ID="key",
            AWS_SECRET_ACCESS_KEY="secret",
            S3_BUCKET_NAME="bucket",
            GOOGLE_AI_API_KEY="ai-key",
        )
        yield
        app.dependency_overrides.pop(get_settings, None)

    def test_healthy(self, client: TestClient, configured):
        response = client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"] == {
            "database": "connected",
            "storage": "connected",
            "ai": "connected",
        }
        assert "timestamp" in body
        assert "uptime" in body
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"

    def test_unconfigured_services(self, client: TestClient):
        app.dependency_overrides[get_settings] = lambda: Settings(
            AWS_ACCESS_KEY_ID="", GOOGLE_AI_API_KEY=""
        )

        response = client.get("/api/health")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unhealthy"
        assert body["services"]["storage"] == "disconnected"
        assert body["services"]["ai"] == "disconnected"

    def test_head(self, client: TestClient):
        response = client.head("/api/health")
        assert response.status_code == 200
        assert response.content == b""

    def test_no_authentication_needed(self, session: Session, configured):
        app.dependency_overrides[get_session] = lambda: session
        try:
            response = TestClient(app).get("/api/health")
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 200


WEBHOOK_SECRET = "whsec_dGVzdC13ZWJob29rLXNlY3JldC0wMTIzNDU2Nzg5"


class TestIdentityWebhook:
    @pytest.fixture(autouse=True)
    def webhook_settings(self, client: TestClient):
        app.dependency_overrides[get_settings] = lambda: Settings(WEBHOOK_SECRET=WEBHOOK_SECRET)

    def _post(self, client: TestClient, event: dict, *, secret: str = WEBHOOK_SECRET):
        payload = json.dumps(event)
        message_id = f"msg_{uuid4().hex}"
        timestamp = datetime.now(timezone.utc)
        signature = Webhook(secret).sign(message_id, timestamp, payload)
        return client.post(
            "/api/webhooks/identity-provider",
            content=payload,
            headers={
                "content-type": "application/json",
                "svix-id": message_id,
                "svix-timestamp": str(int(timestamp.timestamp())),
                "svix-signature": signature,
            },
        )

    def test_user_created(self, session: Session, client: TestClient):
        response = self._post(
            client,
            {
                "type": "user.created",
                "data": {
                    "id": "user_new",
                    "email_addresses": [{"email_address": "new@example.com"}],
                    "first_name": "Ada",
                    "last_name": "Lovelace",
                },
            },
        )

        assert response.status_code == 200
        user = session.get(db.User, "user_new")
        assert user is not None
        assert user.email == "new@example.com"
        assert user.name == "Ada Lovelace"

    def test_user_updated(self, client: TestClient, store: RecordStore, user):
        response = self._post(
            client,
            {"type": "user.updated", "data": {"id": user.id, "first_name": "Uno"}},
        )

        assert response.status_code == 200
        updated = store.get_user(current_user_id)
        assert updated is not None
        assert updated.name == "Uno"
        assert updated.email == "one@example.com"

    def test_user_deleted(
        self,
        session: Session,
        client: TestClient,
        store: RecordStore,
        object_store: FakeObjectStore,
        other_user,
    ):
        image = _stored_image(store, object_store, other_user.id)
        storage_key = image.storage_key

        response = self._post(
            client, {"type": "user.deleted", "data": {"id": other_user_id}}
        )

        assert response.status_code == 200
        assert session.get(db.User, other_user_id) is None
        assert session.exec(select(db.Image)).all() == []
        assert storage_key not in object_store.objects

    def test_unknown_event(self, client: TestClient):
        response = self._post(client, {"type": "session.created", "data": {"id": "sess_1"}})
        assert response.status_code == 200

    def test_bad_signature(self, session: Session, client: TestClient):
        response = self._post(
            client,
            {"type": "user.created", "data": {"id": "user_evil"}},
            secret="whsec_b3RoZXItc2VjcmV0LTAxMjM0NTY3ODk=",
        )
        assert response.status_code == 400
        assert session.get(db.User, "user_evil") is None

    def test_missing_headers(self, client: TestClient):
        response = client.post(
            "/api/webhooks/identity-provider", content=b'{"type": "user.created"}'
        )
        assert response.status_code == 400
