"""Tests for the metadata extraction endpoint."""

from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from app.adapters.metadata.extractor import MetadataExtractor
from app.api.main import create_app
from app.config import load_config

PAGE = """
<html><head>
  <title>Plain title</title>
  <meta property="og:title" content="Foo">
  <meta name="description" content="A page about foo">
  <meta property="og:image" content="/img.png">
</head><body></body></html>
"""


def _handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/missing":
        return httpx.Response(404, text="not here")
    if path == "/slow":
        raise httpx.ReadTimeout("timed out", request=request)
    if path == "/bare":
        return httpx.Response(200, text="<html><head></head></html>")
    return httpx.Response(200, text=PAGE, headers={"Content-Type": "text/html"})


def _client(service_key: str = "") -> TestClient:
    cfg = load_config(metadata={"service_key": service_key, "timeout_sec": 2})
    extractor = MetadataExtractor(
        cfg.metadata, http_client=httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    )
    return TestClient(create_app(cfg, extractor=extractor))


@pytest.fixture
def client():
    with _client() as test_client:
        yield test_client


def test_success_returns_camel_case_fields(client):
    response = client.post("/v1/metadata", json={"url": "https://example.com/post"})

    assert response.status_code == 200
    assert response.json() == {
        "title": "Foo",
        "description": "A page about foo",
        "thumbnailUrl": "https://example.com/img.png",
        "domain": "example.com",
    }
    assert response.headers["X-Correlation-ID"].startswith("api-")


def test_page_without_tags_falls_back_to_domain(client):
    response = client.post("/v1/metadata", json={"url": "www.example.com/bare"})

    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "example.com"
    assert body["description"] is None
    assert body["thumbnailUrl"] is None


@pytest.mark.parametrize("payload", [{}, {"url": ""}, {"url": "   "}, {"url": 12}])
def test_missing_url_is_rejected(client, payload):
    response = client.post("/v1/metadata", json=payload)

    assert response.status_code == 400
    assert response.json()["fallback"] is True
    assert response.json()["error"] == "URL is required"


def test_malformed_body_is_rejected(client):
    response = client.post(
        "/v1/metadata", content=b"not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["fallback"] is True


def test_invalid_url_is_rejected(client):
    response = client.post("/v1/metadata", json={"url": "javascript:alert(1)"})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid URL"


def test_upstream_failure_maps_to_502(client):
    response = client.post("/v1/metadata", json={"url": "https://example.com/missing"})

    assert response.status_code == 502
    body = response.json()
    assert body["fallback"] is True
    assert "HTTP 404" in body["error"]


def test_upstream_timeout_maps_to_504(client):
    response = client.post("/v1/metadata", json={"url": "https://example.com/slow"})

    assert response.status_code == 504
    assert response.json()["fallback"] is True


def test_correlation_id_is_echoed(client):
    response = client.post(
        "/v1/metadata",
        json={"url": "https://example.com/missing"},
        headers={"X-Correlation-ID": "trace-123"},
    )
    assert response.headers["X-Correlation-ID"] == "trace-123"
    assert response.json()["correlationId"] == "trace-123"


def test_service_key_is_enforced():
    key = "k" * 24
    with _client(service_key=key) as secured:
        denied = secured.post("/v1/metadata", json={"url": "https://example.com"})
        wrong = secured.post(
            "/v1/metadata",
            json={"url": "https://example.com"},
            headers={"Authorization": "Bearer nope"},
        )
        allowed = secured.post(
            "/v1/metadata",
            json={"url": "https://example.com"},
            headers={"Authorization": f"Bearer {key}"},
        )

    assert denied.status_code == 401
    assert denied.json()["fallback"] is True
    assert wrong.status_code == 401
    assert allowed.status_code == 200


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["timestamp"].endswith("Z")
