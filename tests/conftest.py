import httpx
import pytest
from fastapi.testclient import TestClient

from app.api.routes import get_http_client
from app.main import app


@pytest.fixture(autouse=True)
def service_env(monkeypatch):
    monkeypatch.setenv("OCR_SPACE_API_KEY", "ocr-test-key")
    monkeypatch.setenv("OCR_SPACE_RETRY_DELAY_MS", "0")
    monkeypatch.setenv("OPENROUTER_API_KEY", "or-test-key")
    monkeypatch.setenv("OPENROUTER_RETRY_DELAY_MS", "0")
    for name in (
        "OCR_SPACE_API_ENDPOINT",
        "OCR_SPACE_API_ENDPOINT_BACKUP",
        "OCR_SPACE_MAX_TRIES",
        "OPENROUTER_BASE_URL",
        "OPENROUTER_BASE_URL_BACKUP",
        "OPENROUTER_MODEL",
        "OPENROUTER_FALLBACK_MODELS",
        "OPENROUTER_MAX_RETRIES",
        "SOLVE_ROLES",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def mock_client():
    def _build(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build


@pytest.fixture
def api_client():
    def _build(handler) -> TestClient:
        async def _client():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                yield client

        app.dependency_overrides[get_http_client] = _client
        return TestClient(app)

    yield _build
    app.dependency_overrides.clear()
