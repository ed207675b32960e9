"""Tests for the result, review, history and sitemap stores."""

from __future__ import annotations

from typing import Any

import pytest

from metawatch.errors import NotFoundError, StoreError
from metawatch.models import ChangeEvent, ChangeEventType, PageStatus, ReviewStatus
from metawatch.storage import JsonFileStore, MemoryStore
from metawatch.stores import (
    ChangeLedger,
    ResultStore,
    ReviewStore,
    SitemapRegistry,
    history_key,
    registrable_domain,
    results_key,
)

from .conftest import SITEMAP, make_page, meta_of_length


class CountingStore(MemoryStore):
    def __init__(self, fail: bool = False) -> None:
        super().__init__()
        self.fail = fail
        self.saves = 0

    async def save(self, key: str, value: Any) -> bool:
        self.saves += 1
        if self.fail:
            return False
        return await super().save(key, value)


def _event(url: str, n: int = 0) -> ChangeEvent:
    return ChangeEvent(
        url=url,
        change_type=ChangeEventType.meta_description,
        old_value=f"old {n}",
        new_value=f"new {n}",
        timestamp=f"2024-01-01T00:00:{n % 60:02d}Z",
    )


# ---------------------------------------------------------------------------
# ResultStore
# ---------------------------------------------------------------------------


class TestResultStore:
    @pytest.mark.asyncio
    async def test_save_stamps_sitemap_url(self):
        results = ResultStore(MemoryStore())
        assert await results.save(SITEMAP, [make_page("https://shop.example.com/a")]) is True

        loaded = await results.load(SITEMAP)
        assert [page.url for page in loaded] == ["https://shop.example.com/a"]
        assert loaded[0].sitemap_url == SITEMAP

    @pytest.mark.asyncio
    async def test_save_leaves_caller_pages_untouched(self):
        page = make_page("https://shop.example.com/a")
        await ResultStore(MemoryStore()).save(SITEMAP, [page])
        assert page.sitemap_url is None

    @pytest.mark.asyncio
    async def test_results_are_per_sitemap(self):
        results = ResultStore(MemoryStore())
        await results.save(SITEMAP, [make_page("https://shop.example.com/a")])
        assert await results.load("https://other.example.com/sitemap.xml") == []

    @pytest.mark.asyncio
    async def test_malformed_result_set(self):
        backend = MemoryStore()
        await backend.save(results_key(SITEMAP), {"not": "a list"})
        assert await ResultStore(backend).load(SITEMAP) == []

    @pytest.mark.asyncio
    async def test_require_save_raises(self):
        results = ResultStore(CountingStore(fail=True))
        with pytest.raises(StoreError, match="Failed to save results"):
            await results.require_save(SITEMAP, [])

    @pytest.mark.asyncio
    async def test_update_page_rescores(self):
        results = ResultStore(MemoryStore())
        await results.save(SITEMAP, [make_page("https://shop.example.com/a", meta=None)])

        page = await results.update_page(
            SITEMAP, "https://shop.example.com/a", meta_description=meta_of_length(140)
        )
        assert page.status == PageStatus.good
        assert page.last_modified is not None
        assert page.title == "Title"

        stored = (await results.load(SITEMAP))[0]
        assert stored.meta_description == meta_of_length(140)
        assert stored.status == PageStatus.good

    @pytest.mark.asyncio
    async def test_update_page_unknown_url(self):
        results = ResultStore(MemoryStore())
        await results.save(SITEMAP, [make_page("https://shop.example.com/a")])
        with pytest.raises(NotFoundError, match="URL not found in results"):
            await results.update_page(SITEMAP, "https://shop.example.com/zzz", title="X")

    @pytest.mark.asyncio
    async def test_list_saved_scans(self, tmp_path):
        results = ResultStore(JsonFileStore(tmp_path))
        await results.save(
            SITEMAP,
            [
                make_page("https://shop.example.com/a"),
                make_page("https://shop.example.com/b", meta=None),
            ],
        )

        scans = await results.list_saved_scans()
        assert len(scans) == 1
        data = scans[0].to_dict()
        assert data["sitemapUrl"] == SITEMAP
        assert data["domain"] == "example.com"
        assert data["totalUrls"] == 2
        assert data["good"] == 1
        assert data["error"] == 1
        assert data["lastScanned"] is not None


class TestRegistrableDomain:
    def test_multi_part_suffix(self):
        assert registrable_domain("https://shop.example.co.uk/sitemap.xml") == "example.co.uk"


# ---------------------------------------------------------------------------
# ReviewStore
# ---------------------------------------------------------------------------


class TestReviewStore:
    @pytest.mark.asyncio
    async def test_update_review_trims_and_stamps(self):
        reviews = ReviewStore(MemoryStore())
        record = await reviews.update_review(
            "https://shop.example.com/a", "in_progress", "  kim ", "  "
        )
        assert record.status == ReviewStatus.in_progress
        assert record.assignee == "kim"
        assert record.notes is None
        assert record.last_reviewed == record.last_updated

        loaded = await reviews.load()
        assert loaded["https://shop.example.com/a"] == record

    @pytest.mark.asyncio
    async def test_invalid_status(self):
        with pytest.raises(ValueError):
            await ReviewStore(MemoryStore()).update_review("u", "done")

    @pytest.mark.asyncio
    async def test_update_review_save_failure(self):
        with pytest.raises(StoreError):
            await ReviewStore(CountingStore(fail=True)).update_review("u", "reviewed")

    @pytest.mark.asyncio
    async def test_bulk_update_keeps_assignee_and_notes(self):
        reviews = ReviewStore(MemoryStore())
        await reviews.update_review("https://shop.example.com/a", "new", "kim", "rewrite")

        updated = await reviews.bulk_update(
            ["https://shop.example.com/a", "https://shop.example.com/b"], "reviewed"
        )
        assert len(updated) == 2

        loaded = await reviews.load()
        assert loaded["https://shop.example.com/a"].status == ReviewStatus.reviewed
        assert loaded["https://shop.example.com/a"].assignee == "kim"
        assert loaded["https://shop.example.com/a"].notes == "rewrite"
        assert loaded["https://shop.example.com/b"].assignee is None

    @pytest.mark.asyncio
    async def test_bulk_update_overrides_assignee(self):
        reviews = ReviewStore(MemoryStore())
        await reviews.update_review("u", "new", "kim")
        await reviews.bulk_update(["u"], "in_progress", "lee")
        assert (await reviews.load())["u"].assignee == "lee"

    @pytest.mark.asyncio
    async def test_bulk_update_single_write(self):
        backend = CountingStore()
        await ReviewStore(backend).bulk_update(["a", "b", "c"], "reviewed")
        assert backend.saves == 1


# ---------------------------------------------------------------------------
# ChangeLedger
# ---------------------------------------------------------------------------


class TestChangeLedger:
    @pytest.mark.asyncio
    async def test_append_and_filter(self):
        ledger = ChangeLedger(MemoryStore())
        await ledger.append(SITEMAP, [_event("https://shop.example.com/a", 1)])
        await ledger.append(SITEMAP, [_event("https://shop.example.com/b", 2)])

        assert [event.url for event in await ledger.history(SITEMAP)] == [
            "https://shop.example.com/a",
            "https://shop.example.com/b",
        ]
        only_b = await ledger.history(SITEMAP, "https://shop.example.com/b")
        assert [event.new_value for event in only_b] == ["new 2"]

    @pytest.mark.asyncio
    async def test_empty_append_does_not_write(self):
        backend = CountingStore()
        assert await ChangeLedger(backend).append(SITEMAP, []) is True
        assert backend.saves == 0

    @pytest.mark.asyncio
    async def test_batch_is_one_write(self):
        backend = CountingStore()
        events = [_event(f"https://shop.example.com/{n}", n) for n in range(25)]
        await ChangeLedger(backend).append(SITEMAP, events)
        assert backend.saves == 1

    @pytest.mark.asyncio
    async def test_keeps_newest_thousand(self):
        ledger = ChangeLedger(MemoryStore())
        await ledger.append(SITEMAP, [_event(f"https://shop.example.com/{n}", n) for n in range(990)])
        await ledger.append(
            SITEMAP, [_event(f"https://shop.example.com/{n}", n) for n in range(990, 1020)]
        )

        history = await ledger.history(SITEMAP)
        assert len(history) == 1000
        assert history[0].url == "https://shop.example.com/20"
        assert history[-1].url == "https://shop.example.com/1019"

    @pytest.mark.asyncio
    async def test_custom_bound(self):
        ledger = ChangeLedger(MemoryStore(), max_entries=3)
        await ledger.append(SITEMAP, [_event(f"u{n}", n) for n in range(5)])
        assert [event.url for event in await ledger.history(SITEMAP)] == ["u2", "u3", "u4"]

    @pytest.mark.asyncio
    async def test_skips_malformed_entries(self):
        backend = MemoryStore()
        await backend.save(
            history_key(SITEMAP),
            [
                {"url": "u", "changeType": "bogus", "timestamp": "t"},
                _event("v").to_dict(),
                "not a dict",
            ],
        )
        assert [event.url for event in await ChangeLedger(backend).history(SITEMAP)] == ["v"]

    @pytest.mark.asyncio
    async def test_save_failure_reported(self):
        assert await ChangeLedger(CountingStore(fail=True)).append(SITEMAP, [_event("u")]) is False


# ---------------------------------------------------------------------------
# SitemapRegistry
# ---------------------------------------------------------------------------


class TestSitemapRegistry:
    @pytest.mark.asyncio
    async def test_add_list_remove(self):
        registry = SitemapRegistry(MemoryStore())
        entry = await registry.add("  Shop ", f" {SITEMAP} ")
        assert entry.name == "Shop"
        assert entry.url == SITEMAP
        assert entry.id

        assert [item.id for item in await registry.list()] == [entry.id]
        await registry.remove(entry.id)
        assert await registry.list() == []

    @pytest.mark.asyncio
    async def test_add_requires_name_and_url(self):
        with pytest.raises(ValueError, match="Name and URL are required"):
            await SitemapRegistry(MemoryStore()).add(" ", SITEMAP)

    @pytest.mark.asyncio
    async def test_remove_unknown(self):
        with pytest.raises(NotFoundError, match="Sitemap not found"):
            await SitemapRegistry(MemoryStore()).remove("nope")

    @pytest.mark.asyncio
    async def test_add_save_failure(self):
        with pytest.raises(StoreError):
            await SitemapRegistry(CountingStore(fail=True)).add("Shop", SITEMAP)
