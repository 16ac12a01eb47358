"""
In-memory replica of remote collections.

The cache holds one versioned map per entity type. Reads that find a missing or stale entry
start a fetch; concurrent readers of the same (entity type, key) share that single fetch.
A failed fetch never clears data: the last good items stay readable and the collection is
flagged with the error so a view can show a stale-data warning instead of going blank.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from blackletter_core.errors import TransientFetchError
from blackletter_core.models import Document, Project, can_transition

logger = logging.getLogger(__name__)

DOCUMENTS = "documents"
PROJECTS = "projects"

FetchAll = Callable[[], Awaitable[Iterable[Any]]]
FetchOne = Callable[[str], Awaitable[Any | None]]
KeyFn = Callable[[Any], str]
MergeFn = Callable[[Any, Any], Any]
Listener = Callable[["CacheEvent"], None]


@dataclass(frozen=True)
class CacheEvent:
    kind: str  # invalidated | refreshed | updated | removed | fetch_failed
    entity_type: str
    key: str | None
    version: int


@dataclass(frozen=True)
class CacheView:
    entity_type: str
    items: tuple[Any, ...]
    version: int
    loaded: bool
    stale: bool
    error: str | None = None

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def ids(self, key_fn: KeyFn) -> list[str]:
        return [key_fn(item) for item in self.items]


@dataclass
class _Collection:
    fetch_all: FetchAll | None = None
    fetch_one: FetchOne | None = None
    key_fn: KeyFn | None = None
    merge: MergeFn | None = None

    items: dict[str, Any] = field(default_factory=dict)
    loaded: bool = False
    stale: bool = True
    stale_keys: set[str] = field(default_factory=set)
    fetched_at: float | None = None
    version: int = 0
    # Bumped on every invalidation; a fetch started under an older epoch is discarded.
    epoch: int = 0
    key_epochs: dict[str, int] = field(default_factory=dict)
    error: BaseException | None = None
    inflight: dict[str | None, asyncio.Future[BaseException | None]] = field(default_factory=dict)


def document_key(doc: Document) -> str:
    return doc.document_id


def project_key(project: Project) -> str:
    return project.project_id


def merge_document(old: Document, new: Document) -> Document:
    """
    Keep the cached status when a refetch reports one it may not move to: a lagging status,
    or the other terminal status.
    """
    if not can_transition(old.status, new.status):
        return new.with_status(old.status, error_message=old.error_message)
    return new


class EntityCache:
    def __init__(
        self,
        *,
        max_age_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._collections: dict[str, _Collection] = {}
        self._listeners: list[Listener] = []
        self._max_age_s = max_age_s
        self._clock = clock

    def register(
        self,
        entity_type: str,
        fetch_all: FetchAll,
        *,
        key_fn: KeyFn,
        fetch_one: FetchOne | None = None,
        merge: MergeFn | None = None,
    ) -> None:
        col = self._collection(entity_type)
        col.fetch_all = fetch_all
        col.fetch_one = fetch_one
        col.key_fn = key_fn
        col.merge = merge

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # -- synchronous snapshot access -------------------------------------------------------

    def peek(self, entity_type: str, key: str) -> Any | None:
        return self._collection(entity_type).items.get(key)

    def view(self, entity_type: str) -> CacheView:
        col = self._collection(entity_type)
        return CacheView(
            entity_type=entity_type,
            items=tuple(col.items.values()),
            version=col.version,
            loaded=col.loaded,
            stale=col.stale or self._expired(col),
            error=str(col.error) if col.error is not None else None,
        )

    def known_ids(self, entity_type: str) -> set[str]:
        return set(self._collection(entity_type).items)

    def version(self, entity_type: str) -> int:
        return self._collection(entity_type).version

    def is_stale(self, entity_type: str, key: str | None = None) -> bool:
        col = self._collection(entity_type)
        if not col.loaded or col.stale or self._expired(col):
            return True
        return key is not None and key in col.stale_keys

    # -- reads ------------------------------------------------------------------------------

    async def get(self, entity_type: str, key: str) -> Any | None:
        col = self._collection(entity_type)
        if col.fetch_all is None:
            return col.items.get(key)

        if not col.loaded or col.stale or self._expired(col):
            await self._load(entity_type, col, None)
        elif key in col.stale_keys or key not in col.items:
            # Without a per-key fetcher the whole collection is reloaded under the shared slot.
            await self._load(entity_type, col, key if col.fetch_one is not None else None)
        return col.items.get(key)

    async def get_all(self, entity_type: str) -> CacheView:
        col = self._collection(entity_type)
        if col.fetch_all is not None and (
            not col.loaded or col.stale or col.stale_keys or self._expired(col)
        ):
            await self._load(entity_type, col, None)
        return self.view(entity_type)

    async def refresh(self, entity_type: str, *, raise_on_error: bool = False) -> CacheView:
        col = self._collection(entity_type)
        if col.fetch_all is None:
            raise KeyError(f"No fetcher registered for {entity_type!r}")
        error = await self._load(entity_type, col, None)
        if error is not None and raise_on_error:
            raise TransientFetchError(entity_type, None, error) from error
        return self.view(entity_type)

    # -- writes -----------------------------------------------------------------------------

    def put(self, entity_type: str, key: str, entity: Any) -> None:
        col = self._collection(entity_type)
        old = col.items.get(key)
        if old is not None and col.merge is not None:
            entity = col.merge(old, entity)
        col.items[key] = entity
        col.stale_keys.discard(key)
        self._bump(entity_type, col, "updated", key)

    def remove(self, entity_type: str, key: str) -> None:
        col = self._collection(entity_type)
        if col.items.pop(key, None) is None:
            return
        col.stale_keys.discard(key)
        self._bump(entity_type, col, "removed", key)

    def invalidate(self, entity_type: str, key: str | None = None) -> None:
        col = self._collection(entity_type)
        if key is None:
            col.stale = True
            col.epoch += 1
            col.inflight.clear()
        else:
            col.stale_keys.add(key)
            col.key_epochs[key] = col.key_epochs.get(key, 0) + 1
            col.inflight.pop(key, None)
        logger.debug("Invalidated %s%s", entity_type, "" if key is None else f":{key}")
        self._bump(entity_type, col, "invalidated", key)

    # -- internals --------------------------------------------------------------------------

    def _collection(self, entity_type: str) -> _Collection:
        col = self._collections.get(entity_type)
        if col is None:
            col = _Collection()
            self._collections[entity_type] = col
        return col

    def _expired(self, col: _Collection) -> bool:
        if self._max_age_s is None or col.fetched_at is None:
            return False
        return (self._clock() - col.fetched_at) >= self._max_age_s

    def _bump(self, entity_type: str, col: _Collection, kind: str, key: str | None) -> None:
        col.version += 1
        event = CacheEvent(kind=kind, entity_type=entity_type, key=key, version=col.version)
        for listener in list(self._listeners):
            listener(event)

    async def _load(self, entity_type: str, col: _Collection, key: str | None) -> BaseException | None:
        fut = col.inflight.get(key)
        if fut is None:
            fut = asyncio.ensure_future(self._fetch(entity_type, col, key))
            col.inflight[key] = fut

            def _done(f: asyncio.Future[BaseException | None], slot: str | None = key) -> None:
                if col.inflight.get(slot) is f:
                    del col.inflight[slot]

            fut.add_done_callback(_done)
        # One impatient caller must not cancel the fetch the others are waiting on.
        return await asyncio.shield(fut)

    async def _fetch(self, entity_type: str, col: _Collection, key: str | None) -> BaseException | None:
        epoch = col.epoch if key is None else (col.epoch, col.key_epochs.get(key, 0))
        try:
            if key is None:
                assert col.fetch_all is not None
                result: Any = list(await col.fetch_all())
            else:
                assert col.fetch_one is not None
                result = await col.fetch_one(key)
        except Exception as e:  # noqa: BLE001
            current = col.epoch if key is None else (col.epoch, col.key_epochs.get(key, 0))
            if current != epoch:
                return e
            col.error = e
            logger.warning(
                "Fetch of %s%s failed; keeping last good data: %s",
                entity_type,
                "" if key is None else f":{key}",
                e,
            )
            self._bump(entity_type, col, "fetch_failed", key)
            return e

        current = col.epoch if key is None else (col.epoch, col.key_epochs.get(key, 0))
        if current != epoch:
            logger.debug("Discarding %s fetch superseded by invalidation", entity_type)
            return None

        if key is None:
            self._apply_collection(col, result)
            self._bump(entity_type, col, "refreshed", None)
        elif result is None:
            col.items.pop(key, None)
            col.stale_keys.discard(key)
            self._bump(entity_type, col, "removed", key)
        else:
            old = col.items.get(key)
            col.items[key] = col.merge(old, result) if (old is not None and col.merge) else result
            col.stale_keys.discard(key)
            col.error = None
            self._bump(entity_type, col, "updated", key)
        return None

    def _apply_collection(self, col: _Collection, entities: list[Any]) -> None:
        assert col.key_fn is not None
        items: dict[str, Any] = {}
        for entity in entities:
            k = col.key_fn(entity)
            old = col.items.get(k)
            items[k] = col.merge(old, entity) if (old is not None and col.merge) else entity
        col.items = items
        col.loaded = True
        col.stale = False
        col.stale_keys.clear()
        col.error = None
        col.fetched_at = self._clock()
