"""
Async in-memory document store.

Mirrors the parts of the hosted document database the service relies on:
collections of JSON-like documents, equality/range filters, ordering,
cursor continuation, merge updates, and rejection of queries that need a
composite index which has not been created.
"""

import asyncio
import copy
import logging
import operator
import uuid
from typing import Iterable, Optional
from urllib.parse import quote

from config import settings
from exceptions import DocumentNotFoundError, IndexRequiredError

logger = logging.getLogger(__name__)

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
}
_EQUALITY_OPS = {"==", "in"}


def required_index(filters: Iterable[tuple], order_by: Iterable[tuple]) -> Optional[tuple]:
    """Return the composite index a query needs, or None if single-field indexes suffice."""
    filters = list(filters)
    order = [(field, direction.lower()) for field, direction in order_by]
    ranged = [field for field, op, _ in filters if op not in _EQUALITY_OPS]
    if ranged and (not order or order[0][0] != ranged[0]):
        order.insert(0, (ranged[0], "asc"))
    if not order:
        return None
    equality = sorted({field for field, op, _ in filters if op in _EQUALITY_OPS})
    fields = tuple((field, "asc") for field in equality) + tuple(order)
    if len({field for field, _ in fields}) <= 1:
        return None
    return fields


class InMemoryDocumentStore:
    """Document store keeping every collection in process memory."""

    def __init__(self, indexes: Iterable[tuple] = (), index_console_url: Optional[str] = None):
        self._collections: dict[str, dict[str, dict]] = {}
        self._indexes: set = set()
        self.index_console_url = index_console_url or settings.index_console_url
        for collection, fields in indexes:
            self.create_index(collection, fields)

    def create_index(self, collection: str, fields: Iterable[tuple]):
        """Register a composite index, e.g. ("listings", [("status", "asc"), ("updated_at", "desc")])."""
        key = (collection, tuple((field, direction.lower()) for field, direction in fields))
        self._indexes.add(key)
        logger.info(f"Composite index registered: {key}")

    def load(self, collection: str, documents: Iterable[dict]):
        """Seed a collection with documents that carry their own ``id``."""
        docs = self._collections.setdefault(collection, {})
        for document in documents:
            docs[document["id"]] = copy.deepcopy(document)

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        document = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def add(self, collection: str, data: dict) -> str:
        doc_id = data.get("id") or uuid.uuid4().hex[:20]
        self._collections.setdefault(collection, {})[doc_id] = {**copy.deepcopy(data), "id": doc_id}
        return doc_id

    async def set(self, collection: str, doc_id: str, data: dict, merge: bool = False):
        docs = self._collections.setdefault(collection, {})
        current = docs.get(doc_id, {}) if merge else {}
        docs[doc_id] = {**current, **copy.deepcopy(data), "id": doc_id}

    async def update(self, collection: str, doc_id: str, fields: dict) -> dict:
        """Merge ``fields`` into an existing document without touching other fields."""
        docs = self._collections.get(collection, {})
        if doc_id not in docs:
            raise DocumentNotFoundError(collection, doc_id)
        docs[doc_id].update(copy.deepcopy(fields))
        return copy.deepcopy(docs[doc_id])

    async def query(
        self,
        collection: str,
        filters: Iterable[tuple] = (),
        order_by: Iterable[tuple] = (),
        limit: Optional[int] = None,
        start_after: Optional[dict] = None,
    ) -> list[dict]:
        """Run a filtered, ordered, cursor-paginated query.

        ``start_after`` is the last document of the previous page, as
        returned by this method.
        """
        filters = list(filters)
        order_by = [(field, direction.lower()) for field, direction in order_by]

        index = required_index(filters, order_by)
        if index is not None and (collection, index) not in self._indexes:
            raise IndexRequiredError(collection, index, self._index_url(collection, index))

        # Suspension point, like a network round trip
        await asyncio.sleep(0)

        rows = [
            doc for doc in self._collections.get(collection, {}).values()
            if self._matches(doc, filters)
        ]
        ranged = [field for field, op, _ in filters if op not in _EQUALITY_OPS]
        if ranged and (not order_by or order_by[0][0] != ranged[0]):
            order_by.insert(0, (ranged[0], "asc"))
        rows = [doc for doc in rows if all(doc.get(field) is not None for field, _ in order_by)]

        if start_after is not None:
            cursor_id = start_after["id"]
            if not any(doc["id"] == cursor_id for doc in rows):
                rows.append(start_after)
            rows = self._sort(rows, order_by)
            position = next(i for i, doc in enumerate(rows) if doc["id"] == cursor_id)
            rows = rows[position + 1:]
        else:
            rows = self._sort(rows, order_by)

        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    def _index_url(self, collection: str, fields: tuple) -> str:
        fields_param = ",".join(f"{field}:{direction}" for field, direction in fields)
        return f"{self.index_console_url}?create_composite={quote(f'{collection}|{fields_param}')}"

    @staticmethod
    def _matches(doc: dict, filters: list) -> bool:
        for field, op, expected in filters:
            value = doc.get(field)
            if value is None:
                return False
            try:
                if not _OPERATORS[op](value, expected):
                    return False
            except TypeError:
                return False
        return True

    @staticmethod
    def _sort(rows: list, order_by: list) -> list:
        # Stable multi-pass sort, least significant key first; document id breaks ties
        rows = sorted(rows, key=lambda doc: doc["id"])
        for field, direction in reversed(order_by):
            rows = sorted(rows, key=lambda doc: doc[field], reverse=direction == "desc")
        return rows
