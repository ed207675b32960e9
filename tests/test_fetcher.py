"""Tests for metawatch.fetcher (browser and plain HTTP paths)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from metawatch.config import ScanOptions, Settings
from metawatch.fetcher import FetchResult, PageFetcher, extract_data_layer

HTML = "<html><head><title>T</title></head><body>ok</body></html>"


def _crawl_result(success=True, html=HTML, status_code=200, error_message=None):
    result = MagicMock()
    result.success = success
    result.html = html
    result.cleaned_html = None
    result.status_code = status_code
    result.error_message = error_message
    result.url = "https://example.com/final"
    return result


def _mock_crawler(*results, side_effect=None):
    crawler = MagicMock()
    crawler.__aenter__ = AsyncMock(return_value=crawler)
    crawler.__aexit__ = AsyncMock(return_value=False)
    crawler.arun = AsyncMock(return_value=list(results), side_effect=side_effect)
    return crawler


def _mock_client(response=None, side_effect=None):
    mc = AsyncMock()
    mc.__aenter__ = AsyncMock(return_value=mc)
    mc.__aexit__ = AsyncMock(return_value=False)
    mc.get = AsyncMock(return_value=response, side_effect=side_effect)
    return mc


class TestExtractDataLayer:
    def test_object_id(self):
        html = "<script>var epConfig = { page: 1, objectId: 'abc-123' };</script>"
        assert extract_data_layer(html) == {"objectId": "abc-123", "hasDataLayer": True}

    def test_data_layer_without_id(self):
        assert extract_data_layer("<script>epConfig = {}</script>") == {
            "objectId": None,
            "hasDataLayer": True,
        }

    def test_absent(self):
        assert extract_data_layer(HTML) == {"objectId": None, "hasDataLayer": False}
        assert extract_data_layer(None)["hasDataLayer"] is False


class TestBrowserFetch:
    @pytest.mark.asyncio
    async def test_success(self):
        crawler = _mock_crawler(_crawl_result())
        with patch("metawatch.fetcher.AsyncWebCrawler", return_value=crawler):
            async with PageFetcher(ScanOptions(), Settings()) as fetcher:
                fetched = await fetcher.fetch("https://example.com/")

        assert fetched.success is True
        assert fetched.html == HTML
        assert fetched.status_code == 200
        assert fetched.signals["finalUrl"] == "https://example.com/final"
        crawler.__aexit__.assert_awaited()

    @pytest.mark.asyncio
    async def test_failed_crawl(self):
        crawler = _mock_crawler(_crawl_result(success=False, html=None, status_code=503))
        with patch("metawatch.fetcher.AsyncWebCrawler", return_value=crawler):
            async with PageFetcher(ScanOptions(), Settings()) as fetcher:
                fetched = await fetcher.fetch("https://example.com/")

        assert fetched.success is False
        assert fetched.error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_error_message_preferred(self):
        crawler = _mock_crawler(
            _crawl_result(success=False, html=None, error_message="net::ERR_NAME_NOT_RESOLVED")
        )
        with patch("metawatch.fetcher.AsyncWebCrawler", return_value=crawler):
            async with PageFetcher(ScanOptions(), Settings()) as fetcher:
                fetched = await fetcher.fetch("https://nowhere.invalid/")

        assert fetched.error == "net::ERR_NAME_NOT_RESOLVED"

    @pytest.mark.asyncio
    async def test_exception_does_not_escape(self):
        crawler = _mock_crawler(side_effect=RuntimeError("browser crashed"))
        with patch("metawatch.fetcher.AsyncWebCrawler", return_value=crawler):
            async with PageFetcher(ScanOptions(), Settings()) as fetcher:
                fetched = await fetcher.fetch("https://example.com/")

        assert fetched == FetchResult(
            url="https://example.com/", success=False, error="browser crashed"
        )

    @pytest.mark.asyncio
    async def test_empty_container(self):
        crawler = _mock_crawler()
        with patch("metawatch.fetcher.AsyncWebCrawler", return_value=crawler):
            async with PageFetcher(ScanOptions(), Settings()) as fetcher:
                fetched = await fetcher.fetch("https://example.com/")

        assert fetched.error == "Crawler returned no results"


class TestHttpFetch:
    @pytest.mark.asyncio
    async def test_success(self):
        response = MagicMock()
        response.text = HTML
        response.status_code = 200
        response.url = "https://example.com/"
        response.raise_for_status = MagicMock()
        mc = _mock_client(response)

        with patch("metawatch.fetcher.httpx.AsyncClient", return_value=mc) as mock_cls:
            async with PageFetcher(ScanOptions(use_browser=False, timeout=5), Settings()) as fetcher:
                fetched = await fetcher.fetch("https://example.com/")

        assert fetched.success is True
        assert fetched.html == HTML
        assert mock_cls.call_args.kwargs["timeout"] == 5
        assert mock_cls.call_args.kwargs["headers"]["User-Agent"] == "SEO-Checker-Bot/1.0"

    @pytest.mark.asyncio
    async def test_http_error(self):
        response = MagicMock()
        response.status_code = 410
        response.raise_for_status = MagicMock(
            side_effect=httpx.HTTPStatusError("gone", request=MagicMock(), response=response)
        )
        mc = _mock_client(response)

        with patch("metawatch.fetcher.httpx.AsyncClient", return_value=mc):
            async with PageFetcher(ScanOptions(use_browser=False), Settings()) as fetcher:
                fetched = await fetcher.fetch("https://example.com/")

        assert fetched.success is False
        assert fetched.status_code == 410
        assert fetched.error == "HTTP 410"

    @pytest.mark.asyncio
    async def test_network_error(self):
        mc = _mock_client(side_effect=httpx.ConnectError("Connection refused"))
        with patch("metawatch.fetcher.httpx.AsyncClient", return_value=mc):
            async with PageFetcher(ScanOptions(use_browser=False), Settings()) as fetcher:
                fetched = await fetcher.fetch("https://example.com/")

        assert fetched.success is False
        assert fetched.error == "Connection refused"


@pytest.mark.asyncio
async def test_fetch_outside_context_raises():
    with pytest.raises(RuntimeError, match="async context manager"):
        await PageFetcher(ScanOptions(), Settings()).fetch("https://example.com/")
