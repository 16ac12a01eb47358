from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from blackletter_core.cache import DOCUMENTS, PROJECTS, CacheEvent, EntityCache
from blackletter_core.models import Document, Project

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def stable_document_order(documents: Iterable[Document]) -> list[Document]:
    """Upload date, oldest first, then id. Documents without a date sort first."""
    return sorted(documents, key=lambda d: (d.upload_date or _EPOCH, d.document_id))


def filter_documents(documents: Iterable[Document], query: str | None) -> list[Document]:
    """Documents whose filename contains `query`, ignoring case. No query keeps everything."""
    needle = (query or "").strip().casefold()
    if not needle:
        return list(documents)
    return [d for d in documents if needle in d.filename.casefold()]


def project_documents(project: Project, documents: Iterable[Document]) -> list[Document]:
    """Resolve a project's references, silently skipping documents that no longer exist."""
    by_id = {d.document_id: d for d in documents}
    return [by_id[i] for i in project.document_ids if i in by_id]


class ToggleSet:
    """Insertion-ordered set of ids with toggle semantics."""

    def __init__(self, ids: Iterable[str] = ()):
        self._ids: dict[str, None] = dict.fromkeys(ids)

    def __contains__(self, item: object) -> bool:
        return item in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self):
        return iter(list(self._ids))

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    def toggle(self, item: str) -> bool:
        """Flip membership of `item`; returns True when it is now selected."""
        if item in self._ids:
            del self._ids[item]
            return False
        self._ids[item] = None
        return True

    def set(self, ids: Iterable[str]) -> None:
        self._ids = dict.fromkeys(ids)

    def clear(self) -> None:
        self._ids.clear()

    def prune(self, known: set[str]) -> list[str]:
        dropped = [i for i in self._ids if i not in known]
        for i in dropped:
            del self._ids[i]
        return dropped


class SelectionCoordinator:
    def __init__(self) -> None:
        self.expanded_projects = ToggleSet()
        self.chat_documents = ToggleSet()
        self.bulk_documents = ToggleSet()
        self._unsubscribe: Callable[[], None] | None = None
        self._cache: EntityCache | None = None

    def attach(self, cache: EntityCache) -> None:
        self.detach()
        self._cache = cache
        self._unsubscribe = cache.subscribe(self._on_cache_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._unsubscribe = None
        self._cache = None

    def toggle_project(self, project_id: str) -> bool:
        return self.expanded_projects.toggle(project_id)

    def toggle_chat_document(self, document_id: str) -> bool:
        return self.chat_documents.toggle(document_id)

    def toggle_bulk_document(self, document_id: str) -> bool:
        return self.bulk_documents.toggle(document_id)

    def select_all(self, documents: Iterable[Document], query: str | None = None) -> list[str]:
        ids = [d.document_id for d in stable_document_order(filter_documents(documents, query))]
        self.bulk_documents.set(ids)
        return ids

    def toggle_all(self, documents: Iterable[Document], query: str | None = None) -> list[str]:
        """
        Select every document matching `query`, or clear the selection if every match is
        already selected.
        """
        ordered = stable_document_order(filter_documents(documents, query))
        if ordered and all(d.document_id in self.bulk_documents for d in ordered):
            self.bulk_documents.clear()
            return []
        return self.select_all(ordered)

    def prune_documents(self, known: set[str]) -> None:
        self.chat_documents.prune(known)
        self.bulk_documents.prune(known)

    def prune_projects(self, known: set[str]) -> None:
        self.expanded_projects.prune(known)

    def _on_cache_event(self, event: CacheEvent) -> None:
        if self._cache is None:
            return
        if event.entity_type == DOCUMENTS and self._cache.view(DOCUMENTS).loaded:
            self.prune_documents(self._cache.known_ids(DOCUMENTS))
        elif event.entity_type == PROJECTS and self._cache.view(PROJECTS).loaded:
            self.prune_projects(self._cache.known_ids(PROJECTS))
