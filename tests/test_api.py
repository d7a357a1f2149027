"""Tests for the MoodTracker HTTP API."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from moodtracker.config import Settings

import httpx
import pytest
from conftest import HAPPY, PURPLE, SAD, png_bytes, solid_image
from fastapi import FastAPI, status

from moodtracker.main import create_app, init_state, shutdown_state


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    shutdown_state(app)


def _app_with(settings: Settings, **overrides: object) -> FastAPI:
    """Create an app and wire its state (ASGITransport does not trigger lifespan)."""
    application = create_app()
    init_state(application, settings.model_copy(update=overrides))
    return application


@pytest.fixture()
def app(settings: Settings) -> FastAPI:
    return _app_with(settings)


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


def _upload(color: tuple[int, int, int]) -> dict[str, tuple[str, io.BytesIO, str]]:
    return {"file": ("face.png", io.BytesIO(png_bytes(solid_image(color))), "image/png")}


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["model_version"] == 1
        assert data["personalized"] is False
        assert data["is_updating"] is False
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_gpu_true_when_cuda(self, settings: Settings) -> None:
        async for ac in _make_client(_app_with(settings, device="cuda")):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestClassifyEndpoint:
    async def test_classify_returns_top_label(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classify", files=_upload(SAD))
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["label"] == "sad"
        assert 0.0 <= data["confidence"] <= 1.0
        assert data["failure"] is None

    async def test_undecodable_upload_returns_unknown(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"label": "Unknown", "confidence": 0.0, "failure": "decode_failed"}

    async def test_oversized_upload_rejected(self, settings: Settings) -> None:
        async for ac in _make_client(_app_with(settings, max_file_size=16)):
            response = await ac.post("/api/v1/classify", files=_upload(SAD))
            assert response.status_code == 413


class TestUpdateEndpoint:
    async def test_update_personalizes_model(self, client: httpx.AsyncClient) -> None:
        before = await client.post("/api/v1/classify", files=_upload(PURPLE))
        assert before.json()["label"] == "sad"

        response = await client.post("/api/v1/update", files=_upload(PURPLE), data={"label": "happy"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["state"] == "completed"
        assert data["failure"] is None
        assert data["records"] == 1
        assert data["model_version"] == 2

        after = await client.post("/api/v1/classify", files=_upload(PURPLE))
        assert after.json()["label"] == "happy"
        assert after.json()["confidence"] > 0.5

    async def test_blank_label_is_empty_batch(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/update", files=_upload(HAPPY), data={"label": "  "})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["failure"] == "empty_batch"
        assert data["model_version"] == 1

    async def test_vocabulary_policy_rejects_new_label(self, settings: Settings) -> None:
        async for ac in _make_client(_app_with(settings, label_policy="vocabulary")):
            response = await ac.post("/api/v1/update", files=_upload(HAPPY), data={"label": "ecstatic"})
            assert response.status_code == status.HTTP_400_BAD_REQUEST
            assert response.json()["failure"] == "empty_batch"

    async def test_undecodable_upload_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/update",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
            data={"label": "happy"},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_missing_label_is_validation_error(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/update", files=_upload(HAPPY))
        assert response.status_code == 422


class TestModelEndpoints:
    async def test_model_info(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/model")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["name"] == "EmotionsImageClassifier"
        assert data["version"] == 1
        assert data["source"] == "bundled"
        assert data["labels"] == ["sad", "happy", "angry"]
        assert data["exemplars"] == 3
        assert data["input"] == {"feature_name": "image", "width": 224, "height": 224, "pixel_format": "RGB"}

    async def test_reset_personalization(self, client: httpx.AsyncClient) -> None:
        await client.post("/api/v1/update", files=_upload(PURPLE), data={"label": "calm"})
        info = (await client.get("/api/v1/model")).json()
        assert info["source"] == "personalized"
        assert "calm" in info["labels"]

        response = await client.delete("/api/v1/model/personalization")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"removed": True, "model_version": 1}
        assert (await client.get("/api/v1/model")).json()["source"] == "bundled"

    async def test_reset_without_personalization(self, client: httpx.AsyncClient) -> None:
        response = await client.delete("/api/v1/model/personalization")
        assert response.json() == {"removed": False, "model_version": 1}


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, settings: Settings) -> None:
        async for ac in _make_client(_app_with(settings, api_key="test-secret-key")):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self, settings: Settings) -> None:
        async for ac in _make_client(_app_with(settings, api_key="test-secret-key")):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, settings: Settings) -> None:
        async for ac in _make_client(_app_with(settings, api_key="test-secret-key")):
            response = await ac.post(
                "/api/v1/classify",
                files=_upload(SAD),
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
