"""
Listing search with cursor pagination.

The preferred query filters and sorts in the store and needs a composite
index per filter/sort combination. When the store says an index is
missing, the pager switches for good to a plain paginated scan and does
all filtering and sorting itself. Both paths go through the same
client-side normalization.
"""

import logging
import re
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Optional

from opentelemetry import trace

from config import settings
from data import to_instant, utcnow
from exceptions import IndexRequiredError
from flags import FeatureFlags, feature_flags
from models import Listing, ListingPage, ListingSearchRequest, PagerMode

logger = logging.getLogger(__name__)

LISTINGS = "listings"

CITY_ALIASES = {
    "fct": "abuja",
    "fct abuja": "abuja",
    "abuja fct": "abuja",
    "federal capital territory": "abuja",
    "lagos state": "lagos",
    "lagos island": "lagos",
    "lagos mainland": "lagos",
    "ph": "port harcourt",
    "portharcourt": "port harcourt",
    "port-harcourt": "port harcourt",
}

FALLBACK_NOTICE = "Some filters are running without a search index. Results may be slower or incomplete."
LOAD_ERROR = "Couldn't load listings. Check your connection and try again."
INDEX_ERROR = "Couldn't load listings: this search needs a database index."

_WHITESPACE = re.compile(r"\s+")


def normalize_city(value: Optional[str]) -> str:
    """Lowercase, collapse whitespace and fold known aliases to one city key."""
    key = _WHITESPACE.sub(" ", str(value or "").replace(".", " ").replace(",", " ")).strip().lower()
    return CITY_ALIASES.get(key, key)


def _normalize_text(value) -> str:
    return _WHITESPACE.sub(" ", str(value or "")).strip().lower()


def _image_prefix(photos: list, length: int = 96) -> str:
    if not photos:
        return ""
    return str(photos[0]).split("?", 1)[0].split("#", 1)[0][:length]


def listing_fingerprint(listing: Listing) -> str:
    """Content key that survives duplicate imports under new ids."""
    return "|".join([
        normalize_city(listing.city),
        _normalize_text(listing.title),
        f"{float(listing.price_per_night):.2f}",
        _image_prefix(listing.photos),
    ])


def recency(listing: Listing) -> float:
    instant = to_instant(listing.updated_at) or to_instant(listing.created_at)
    return instant.timestamp() if instant else 0.0


class ListingSearchPager:
    """Pages through listings for one search, remembering its cursor and strategy."""

    def __init__(
        self,
        store,
        request: ListingSearchRequest,
        page_size: int = None,
        flags: FeatureFlags = None,
        entity_id: str = "anonymous",
    ):
        self.store = store
        self.request = request
        self.page_size = page_size or settings.search_page_size
        self.flags = flags or feature_flags
        self.entity_id = entity_id
        self.mode = PagerMode.INDEXED
        self.notice: Optional[str] = None
        self.has_more = True
        self.tracer = trace.get_tracer(__name__)
        self._cursor: Optional[dict] = None
        self._loading = False
        self._seen_ids: set = set()
        self._seen_fingerprints: set = set()
        self._city_key = normalize_city(request.city) if request.city else ""
        self._needle = _normalize_text(request.query)

    @property
    def loading(self) -> bool:
        return self._loading

    async def load_more(self) -> Optional[ListingPage]:
        """Fetch the next page.

        Returns None when a fetch is already in flight or the results are
        exhausted. Errors come back as a page with ``ok=False``.
        """
        if self._loading or not self.has_more:
            return None
        self._loading = True
        try:
            with self.tracer.start_as_current_span("listings.search") as span:
                span.set_attribute("search.city", self._city_key or "all")
                span.set_attribute("search.has_price_filter", self.request.has_price_filter)
                page = await self._load_page()
                span.set_attribute("search.mode", page.mode.value)
                span.set_attribute("search.results", len(page.items))
                return page
        finally:
            self._loading = False

    async def _load_page(self) -> ListingPage:
        raw = None
        if self.mode == PagerMode.INDEXED:
            try:
                raw = await self._query_indexed()
            except IndexRequiredError as e:
                if not self.flags.is_index_fallback_enabled(self.entity_id):
                    logger.error(f"Listing search needs an index and fallback is disabled: {e}")
                    return self._error_page(INDEX_ERROR, index_url=e.index_url)
                logger.warning(f"Listing search switching to fallback scan: {e}")
                self.mode = PagerMode.FALLBACK
                self.notice = FALLBACK_NOTICE
                self._cursor = None
            except Exception as e:
                logger.error(f"Listing search failed: {e}")
                return self._error_page(LOAD_ERROR)

        if raw is None:
            try:
                raw = await self._query_fallback()
            except Exception as e:
                logger.error(f"Listing fallback scan failed: {e}")
                return self._error_page(LOAD_ERROR)

        if raw:
            self._cursor = raw[-1]
        self.has_more = len(raw) >= self.page_size

        items = self._normalize(raw)
        logger.info(
            f"Search page: {len(raw)} rows, {len(items)} results, "
            f"mode={self.mode.value}, has_more={self.has_more}"
        )
        return ListingPage(
            ok=True,
            items=items,
            has_more=self.has_more,
            mode=self.mode,
            notice=self.notice,
        )

    async def _query_indexed(self) -> list[dict]:
        filters = [("status", "==", "active")]
        if self.request.min_price is not None:
            filters.append(("price_per_night", ">=", self.request.min_price))
        if self.request.max_price is not None:
            filters.append(("price_per_night", "<=", self.request.max_price))
        if self.request.has_price_filter:
            order_by = [("price_per_night", "asc")]
        else:
            order_by = [("updated_at", "desc")]
        return await self.store.query(
            LISTINGS,
            filters=filters,
            order_by=order_by,
            limit=self.page_size,
            start_after=self._cursor,
        )

    async def _query_fallback(self) -> list[dict]:
        return await self.store.query(LISTINGS, limit=self.page_size, start_after=self._cursor)

    def _normalize(self, rows: list[dict]) -> list[Listing]:
        results = []
        for row in rows:
            try:
                listing = Listing.model_validate(row)
            except ValueError as e:
                logger.warning(f"Skipping malformed listing {row.get('id')}: {e}")
                continue
            if not self._keep(listing):
                continue
            fingerprint = listing_fingerprint(listing)
            if listing.id in self._seen_ids or fingerprint in self._seen_fingerprints:
                continue
            self._seen_ids.add(listing.id)
            self._seen_fingerprints.add(fingerprint)
            results.append(listing)

        if self.request.has_price_filter:
            results.sort(key=lambda listing: listing.price_per_night)
        else:
            results.sort(key=recency, reverse=True)
        return results

    def _keep(self, listing: Listing) -> bool:
        if listing.status != "active":
            return False
        if self._city_key and normalize_city(listing.city) != self._city_key:
            return False
        if self._needle:
            haystacks = (listing.title, listing.city, listing.area)
            if not any(self._needle in _normalize_text(text) for text in haystacks):
                return False
        if self.request.min_price is not None and listing.price_per_night < self.request.min_price:
            return False
        if self.request.max_price is not None and listing.price_per_night > self.request.max_price:
            return False
        return True

    def _error_page(self, message: str, index_url: str = None) -> ListingPage:
        return ListingPage(
            ok=False,
            items=[],
            has_more=self.has_more,
            mode=self.mode,
            notice=self.notice,
            error=message,
            retryable=True,
            index_url=index_url,
        )


class SearchSessions:
    """Open pagers keyed by search id.

    A search idle for longer than ``ttl`` is dropped, and so is the least
    recently used one once more than ``limit`` are open.
    """

    def __init__(self, ttl: timedelta = None, limit: int = None, clock: Callable[[], datetime] = None):
        self.ttl = ttl or timedelta(minutes=settings.search_session_ttl_minutes)
        self.limit = limit or settings.search_session_limit
        self.clock = clock or utcnow
        # search id -> (last used, pager), least recently used first
        self._pagers = OrderedDict()

    def open(self, pager: ListingSearchPager) -> str:
        self.evict_expired()
        search_id = uuid.uuid4().hex
        self._pagers[search_id] = (self.clock(), pager)
        while len(self._pagers) > self.limit:
            dropped, _ = self._pagers.popitem(last=False)
            logger.info(f"Search {dropped} dropped: too many open searches")
        return search_id

    def get(self, search_id: str) -> Optional[ListingSearchPager]:
        self.evict_expired()
        entry = self._pagers.get(search_id)
        if entry is None:
            return None
        self._pagers[search_id] = (self.clock(), entry[1])
        self._pagers.move_to_end(search_id)
        return entry[1]

    def drop(self, search_id: str):
        self._pagers.pop(search_id, None)

    def evict_expired(self) -> int:
        cutoff = self.clock() - self.ttl
        evicted = 0
        while self._pagers:
            used_at, _ = next(iter(self._pagers.values()))
            if used_at > cutoff:
                break
            self._pagers.popitem(last=False)
            evicted += 1
        if evicted:
            logger.info(f"Evicted {evicted} idle searches")
        return evicted

    def __len__(self) -> int:
        return len(self._pagers)

    def __contains__(self, search_id: str) -> bool:
        return search_id in self._pagers
