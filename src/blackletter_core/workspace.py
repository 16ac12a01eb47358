from __future__ import annotations

from collections.abc import Iterable

from blackletter_core.cache import (
    DOCUMENTS,
    PROJECTS,
    EntityCache,
    document_key,
    merge_document,
    project_key,
)
from blackletter_core.chat import ChatSession, ChatSessionController
from blackletter_core.config import Settings
from blackletter_core.models import Document, Project
from blackletter_core.mutations import ConfirmFn, MutationOrchestrator
from blackletter_core.poller import JobStatusPoller, SleepFn
from blackletter_core.remote.base import RemoteService
from blackletter_core.remote.client import HttpRemoteService
from blackletter_core.selection import SelectionCoordinator, project_documents, stable_document_order


class Workspace:
    """
    Wires the cache, orchestrator, poller, chat controller and selection state around one
    remote service for one user.
    """

    def __init__(
        self,
        service: RemoteService,
        *,
        user_id: str,
        poll_interval_s: float = 5.0,
        poll_max_attempts: int | None = None,
        cache_max_age_s: float | None = None,
        max_upload_bytes: int = 100 * 1024 * 1024,
        confirm: ConfirmFn | None = None,
        sleep: SleepFn | None = None,
    ):
        self.service = service
        self.user_id = user_id
        self.cache = EntityCache(max_age_s=cache_max_age_s)
        self.cache.register(
            DOCUMENTS,
            lambda: service.fetch_documents(user_id),
            key_fn=document_key,
            merge=merge_document,
        )
        self.cache.register(PROJECTS, service.fetch_projects, key_fn=project_key)

        poller_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.poller = JobStatusPoller(
            service,
            self.cache,
            interval_s=poll_interval_s,
            max_attempts=poll_max_attempts,
            **poller_kwargs,
        )
        self.mutations = MutationOrchestrator(
            service,
            self.cache,
            user_id=user_id,
            poller=self.poller,
            confirm=confirm,
            max_upload_bytes=max_upload_bytes,
        )
        self.chat = ChatSessionController(service, self.cache, user_id=user_id)
        self.selection = SelectionCoordinator()
        self.selection.attach(self.cache)

    @classmethod
    def from_settings(cls, settings: Settings, *, confirm: ConfirmFn | None = None) -> Workspace:
        service = HttpRemoteService(
            base_url=settings.api_base_url,
            projects_owner=settings.projects_owner or settings.user_id,
            api_key=settings.api_key_value(),
            timeout_s=settings.http_timeout_s,
        )
        return cls(
            service,
            user_id=settings.user_id,
            poll_interval_s=settings.poll_interval_s,
            poll_max_attempts=settings.poll_max_attempts,
            cache_max_age_s=settings.cache_max_age_s,
            max_upload_bytes=settings.max_upload_bytes,
            confirm=confirm,
        )

    async def documents(self) -> list[Document]:
        view = await self.cache.get_all(DOCUMENTS)
        docs = self.mutations.apply_pending_documents(view.items)
        # Resume tracking for anything the server is still working on.
        for doc in docs:
            if not doc.status.is_terminal:
                self.poller.start(doc.document_id)
        return stable_document_order(docs)

    async def projects(self) -> list[Project]:
        view = await self.cache.get_all(PROJECTS)
        return self.mutations.apply_pending(view.items)

    async def project(self, project_id: str) -> Project | None:
        return await self.cache.get(PROJECTS, project_id)

    async def project_documents(self, project_id: str) -> list[Document]:
        project = await self.project(project_id)
        if project is None:
            return []
        view = await self.cache.get_all(DOCUMENTS)
        return project_documents(project, view.items)

    def open_chat(self, document_ids: Iterable[str] | None = None) -> ChatSession:
        if document_ids is None:
            document_ids = self.selection.chat_documents.ids
        return self.chat.open(document_ids)

    def close(self) -> None:
        self.chat.close()
        self.poller.cancel_all()
        self.selection.detach()
