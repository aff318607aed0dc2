"""Tests for the server-side metadata extractor."""

from __future__ import annotations

import httpx
import pytest

from app.adapters.metadata.extractor import (
    MetadataExtractor,
    build_metadata,
    resolve_thumbnail_url,
)
from app.config import DEFAULT_USER_AGENT, MetadataConfig
from app.domain.exceptions.domain_exceptions import ExtractionError, InvalidUrlError


def _extractor(handler, **config) -> MetadataExtractor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MetadataExtractor(MetadataConfig(**config), http_client=client)


def _html_response(body: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, text=body, headers={"Content-Type": "text/html; charset=utf-8"})


class TestResolveThumbnailUrl:
    def test_relative_path_resolves_against_page(self):
        assert (
            resolve_thumbnail_url("/img.png", "https://example.com/a/b")
            == "https://example.com/img.png"
        )
        assert (
            resolve_thumbnail_url("img.png", "https://example.com/a/b")
            == "https://example.com/a/img.png"
        )

    def test_protocol_relative_inherits_scheme(self):
        assert (
            resolve_thumbnail_url("//cdn.example.com/i.png", "http://example.com")
            == "http://cdn.example.com/i.png"
        )

    def test_absolute_kept_and_non_http_dropped(self):
        assert resolve_thumbnail_url("https://x.io/i.png", "https://a.com") == "https://x.io/i.png"
        assert resolve_thumbnail_url("data:image/png;base64,AAA", "https://a.com") is None
        assert resolve_thumbnail_url(None, "https://a.com") is None


class TestBuildMetadata:
    def test_og_title_with_relative_image(self):
        html = (
            '<head><meta property="og:title" content="Foo">'
            '<meta property="og:image" content="/img.png"></head>'
        )
        metadata = build_metadata(html, "https://example.com/post", "example.com")
        assert metadata.title == "Foo"
        assert metadata.description is None
        assert metadata.thumbnail_url == "https://example.com/img.png"
        assert metadata.complete is True

    def test_ladder_falls_back_tier_by_tier(self):
        html = (
            "<head><title>Doc title</title>"
            '<meta name="description" content="Plain description">'
            '<meta name="twitter:image" content="https://img.example.com/t.png"></head>'
        )
        metadata = build_metadata(html, "https://example.com", "example.com")
        assert metadata.title == "Doc title"
        assert metadata.description == "Plain description"
        assert metadata.thumbnail_url == "https://img.example.com/t.png"

    def test_empty_page_uses_domain_and_is_incomplete(self):
        metadata = build_metadata("<html></html>", "https://example.com", "example.com")
        assert metadata.title == "example.com"
        assert metadata.description is None
        assert metadata.thumbnail_url is None
        assert metadata.complete is False


class TestMetadataExtractor:
    @pytest.mark.asyncio
    async def test_fetches_with_user_agent(self):
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["ua"] = request.headers["User-Agent"]
            seen["url"] = str(request.url)
            return _html_response(
                '<head><meta property="og:title" content="Foo">'
                '<meta property="og:image" content="/img.png"></head>'
            )

        async with _extractor(handler) as extractor:
            metadata = await extractor.extract("www.example.com/post")

        assert seen["ua"] == DEFAULT_USER_AGENT
        assert seen["url"] == "https://www.example.com/post"
        assert metadata.title == "Foo"
        assert metadata.domain == "example.com"
        assert metadata.thumbnail_url == "https://www.example.com/img.png"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_extraction_error(self):
        extractor = _extractor(lambda request: _html_response("missing", status=404))
        with pytest.raises(ExtractionError) as exc_info:
            await extractor.extract("https://example.com/gone")
        assert exc_info.value.reason == "upstream_status"
        assert exc_info.value.status_code == 404
        assert "404" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout_raises_extraction_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ExtractionError) as exc_info:
            await _extractor(handler).extract("https://example.com")
        assert exc_info.value.reason == "timeout"

    @pytest.mark.asyncio
    async def test_transport_error_raises_extraction_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ExtractionError) as exc_info:
            await _extractor(handler).extract("https://example.com")
        assert exc_info.value.reason == "transport"

    @pytest.mark.asyncio
    async def test_invalid_url_is_rejected_before_fetching(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return _html_response("")

        with pytest.raises(InvalidUrlError):
            await _extractor(handler).extract("javascript:alert(1)")
        assert calls == []

    @pytest.mark.asyncio
    async def test_body_is_truncated_to_limit(self):
        filler = "x" * 4096
        html = f"<head><title>Kept</title></head><body>{filler}</body>"
        late = '<meta property="og:title" content="Too late">'
        extractor = _extractor(lambda request: _html_response(html + late), max_body_bytes=2048)
        metadata = await extractor.extract("https://example.com")
        assert metadata.title == "Kept"
