import asyncio
from datetime import timedelta

import pytest

from data import LISTINGS as SEED_LISTINGS, get_all_listings
from models import ListingSearchRequest, PagerMode
from search import (
    FALLBACK_NOTICE,
    INDEX_ERROR,
    LISTINGS,
    LOAD_ERROR,
    ListingSearchPager,
    SearchSessions,
    listing_fingerprint,
    normalize_city,
)
from store import InMemoryDocumentStore
from conftest import NOW, FakeFlags

BROWSE_INDEX = [("status", "asc"), ("updated_at", "desc")]
PRICE_INDEX = [("status", "asc"), ("price_per_night", "asc")]


class RecordingStore(InMemoryDocumentStore):
    def __init__(self, indexes=()):
        super().__init__(indexes=indexes, index_console_url="https://console.test/indexes")
        self.calls = []

    async def query(self, collection, filters=(), order_by=(), limit=None, start_after=None):
        self.calls.append(list(order_by))
        return await super().query(collection, filters, order_by, limit, start_after)


def seeded_store(*indexes):
    store = RecordingStore(indexes=[(LISTINGS, fields) for fields in indexes])
    store.load(LISTINGS, get_all_listings())
    return store


def pager_for(store, page_size=40, flags=None, **search):
    return ListingSearchPager(store, ListingSearchRequest(**search), page_size=page_size, flags=flags or FakeFlags())


def ids(page):
    return [listing.id for listing in page.items]


@pytest.mark.parametrize("value, expected", [
    ("Lagos", "lagos"),
    ("  port   harcourt ", "port harcourt"),
    ("Port-Harcourt", "port harcourt"),
    ("F.C.T.", "f c t"),
    ("FCT", "abuja"),
    ("FCT, Abuja", "abuja"),
    (None, ""),
])
def test_normalize_city(value, expected):
    assert normalize_city(value) == expected


def test_fingerprint_ignores_import_noise():
    original = next(listing for listing in SEED_LISTINGS if listing.id == "lst-5")
    duplicate = next(listing for listing in SEED_LISTINGS if listing.id == "lst-5-dup")
    assert listing_fingerprint(original) == listing_fingerprint(duplicate)

    other = original.model_copy(update={"price_per_night": 28500})
    assert listing_fingerprint(other) != listing_fingerprint(original)


async def test_indexed_browse_sorted_by_recency():
    pager = pager_for(seeded_store(BROWSE_INDEX))

    page = await pager.load_more()

    assert page.ok
    assert page.mode == PagerMode.INDEXED
    assert page.notice is None
    assert ids(page) == ["lst-4", "lst-2", "lst-1", "lst-5", "lst-3"]
    assert not page.has_more


async def test_missing_index_falls_back_with_filtered_results():
    store = seeded_store()
    pager = pager_for(store, city="lagos")

    page = await pager.load_more()

    assert page.ok
    assert page.mode == PagerMode.FALLBACK
    assert page.notice == FALLBACK_NOTICE
    # draft lst-6 is excluded, newest first
    assert ids(page) == ["lst-2", "lst-1"]
    assert store.calls == [[("updated_at", "desc")], []]


async def test_price_filter_sorts_ascending():
    pager = pager_for(seeded_store(BROWSE_INDEX), min_price=30000, max_price=70000)

    page = await pager.load_more()

    assert page.mode == PagerMode.FALLBACK
    assert ids(page) == ["lst-4", "lst-1", "lst-3"]
    prices = [listing.price_per_night for listing in page.items]
    assert prices == sorted(prices)


async def test_price_filter_uses_index_when_present():
    pager = pager_for(seeded_store(PRICE_INDEX), max_price=50000)

    page = await pager.load_more()

    assert page.mode == PagerMode.INDEXED
    assert ids(page) == ["lst-5", "lst-4", "lst-1"]


async def test_city_aliases_fold_together():
    page = await pager_for(seeded_store(), city="FCT").load_more()
    assert sorted(ids(page)) == ["lst-3", "lst-4"]


async def test_text_query_and_duplicates_collapse():
    page = await pager_for(seeded_store(BROWSE_INDEX), query="guest HOUSE").load_more()
    assert ids(page) == ["lst-5"]


async def test_fallback_is_sticky_across_pages():
    store = seeded_store()
    pager = pager_for(store, page_size=2)

    pages = []
    while True:
        page = await pager.load_more()
        if page is None:
            break
        pages.append(page)

    assert len(pages) == 4
    assert all(page.mode == PagerMode.FALLBACK for page in pages)
    # one indexed attempt, then only fallback scans
    assert store.calls[0] == [("updated_at", "desc")]
    assert store.calls[1:] == [[]] * 4
    seen = [listing_id for page in pages for listing_id in ids(page)]
    assert sorted(seen) == ["lst-1", "lst-2", "lst-3", "lst-4", "lst-5"]
    assert not pages[-1].has_more


async def test_disabled_fallback_reports_index_link():
    store = seeded_store()
    pager = pager_for(store, flags=FakeFlags(index_fallback=False))

    page = await pager.load_more()

    assert not page.ok
    assert page.error == INDEX_ERROR
    assert page.index_url.startswith("https://console.test/indexes?create_composite=")
    assert page.retryable
    assert pager.mode == PagerMode.INDEXED
    assert len(store.calls) == 1


async def test_other_errors_are_retryable():
    class FailingStore(InMemoryDocumentStore):
        async def query(self, *args, **kwargs):
            raise ConnectionError("offline")

    pager = pager_for(FailingStore())

    page = await pager.load_more()

    assert not page.ok
    assert page.error == LOAD_ERROR
    assert page.retryable
    assert pager.mode == PagerMode.INDEXED
    assert pager.has_more
    assert not pager.loading


async def test_concurrent_load_more_is_ignored():
    store = seeded_store(BROWSE_INDEX)
    pager = pager_for(store)

    first, second = await asyncio.gather(pager.load_more(), pager.load_more())

    assert first is not None and first.ok
    assert second is None
    assert len(store.calls) == 1


async def test_exhausted_pager_returns_none():
    pager = pager_for(seeded_store(BROWSE_INDEX))

    assert (await pager.load_more()) is not None
    assert (await pager.load_more()) is None


def test_idle_searches_are_evicted():
    now = [NOW]
    sessions = SearchSessions(ttl=timedelta(minutes=30), clock=lambda: now[0])
    store = seeded_store()
    idle = sessions.open(pager_for(store))
    active = sessions.open(pager_for(store))

    now[0] = NOW + timedelta(minutes=20)
    assert sessions.get(active) is not None

    now[0] = NOW + timedelta(minutes=31)
    latest = sessions.open(pager_for(store))

    assert idle not in sessions
    assert sessions.get(idle) is None
    assert active in sessions and latest in sessions


def test_open_searches_are_capped():
    sessions = SearchSessions(limit=2, clock=lambda: NOW)
    store = seeded_store()
    first, second = sessions.open(pager_for(store)), sessions.open(pager_for(store))
    sessions.get(first)

    third = sessions.open(pager_for(store))

    assert len(sessions) == 2
    assert second not in sessions
    assert first in sessions and third in sessions

    sessions.drop(first)
    assert first not in sessions
