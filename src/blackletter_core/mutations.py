from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from blackletter_core.cache import DOCUMENTS, PROJECTS, EntityCache
from blackletter_core.errors import ConfirmationDeclined, InProgressError, MutationError, ValidationError
from blackletter_core.models import Document, Project
from blackletter_core.remote.base import RemoteService, ServiceError

if TYPE_CHECKING:
    from blackletter_core.poller import JobStatusPoller

logger = logging.getLogger(__name__)

T = TypeVar("T")

ConfirmFn = Callable[[str, str], bool]

PDF_CONTENT_TYPE = "application/pdf"


class MutationState(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Mutation:
    operation: str
    target: str
    entity_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    state: MutationState = MutationState.PENDING
    error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _clean_ids(ids: Iterable[str] | None) -> list[str]:
    cleaned = [i.strip() for i in ids or [] if isinstance(i, str) and i.strip()]
    return list(dict.fromkeys(cleaned))


def _require_id(value: str, what: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{what} must not be empty")
    return value


def _require_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Project name must not be empty")
    return name


class MutationOrchestrator:
    """
    Runs user-issued writes against the remote service.

    Each write is validated locally, guarded so that only one mutation per target entity is
    outstanding, and tracked as a `Mutation` record. The cache is only invalidated after the
    remote call succeeds; a failed mutation is rolled back by never being committed.
    """

    def __init__(
        self,
        service: RemoteService,
        cache: EntityCache,
        *,
        user_id: str,
        poller: JobStatusPoller | None = None,
        confirm: ConfirmFn | None = None,
        max_upload_bytes: int = 100 * 1024 * 1024,
        history_size: int = 50,
    ):
        self._service = service
        self._cache = cache
        self._user_id = user_id
        self._poller = poller
        self._confirm = confirm
        self._max_upload_bytes = max_upload_bytes
        self._pending: dict[str, Mutation] = {}
        self._history: deque[Mutation] = deque(maxlen=history_size)

    @property
    def pending(self) -> list[Mutation]:
        return list(self._pending.values())

    @property
    def history(self) -> list[Mutation]:
        return list(self._history)

    def is_pending(self, target: str) -> bool:
        return target in self._pending

    # -- projects ---------------------------------------------------------------------------

    async def create_project(self, name: str, initial_file_ids: Iterable[str] | None = None) -> Project:
        name = _require_name(name)
        file_ids = _clean_ids(initial_file_ids)
        mutation = self._begin(
            "createProject",
            f"project:new:{name.casefold()}",
            payload={"name": name, "file_ids": file_ids},
        )
        project = await self._execute(mutation, lambda: self._service.create_project(name))
        mutation.entity_id = project.project_id
        self._cache.invalidate(PROJECTS)
        logger.info("Created project %s (%s)", project.project_id, name)

        seed_error: MutationError | None = None
        if file_ids:
            try:
                await self.add_files(project.project_id, file_ids)
                project = project.with_documents(list(project.document_ids) + file_ids)
            except MutationError as e:
                seed_error = MutationError("addFiles", e.message, entity_id=project.project_id)

        project = await self._await_absorbed(project)
        if seed_error is not None:
            raise seed_error
        return project

    async def rename_project(self, project_id: str, name: str) -> Project | None:
        project_id = _require_id(project_id, "Project id")
        name = _require_name(name)
        mutation = self._begin("renameProject", f"project:{project_id}", project_id, {"name": name})
        updated = await self._execute(
            mutation, lambda: self._service.update_project(project_id, name=name)
        )
        self._cache.invalidate(PROJECTS)
        return updated

    async def delete_project(self, project_id: str) -> None:
        project_id = _require_id(project_id, "Project id")
        target = f"project:{project_id}"
        self._ensure_idle(target)
        self._ask_confirmation("deleteProject", project_id)
        mutation = self._begin("deleteProject", target, project_id)
        await self._execute(mutation, lambda: self._service.delete_project(project_id))
        # Documents are owned independently; deleting a project never touches them.
        self._cache.invalidate(PROJECTS)

    async def add_files(self, project_id: str, file_ids: Iterable[str]) -> None:
        project_id = _require_id(project_id, "Project id")
        ids = _clean_ids(file_ids)
        if not ids:
            raise ValidationError("At least one file id is required")
        mutation = self._begin("addFiles", f"project:{project_id}", project_id, {"file_ids": ids})
        await self._execute(mutation, lambda: self._service.add_files_to_project(project_id, ids))
        self._cache.invalidate(PROJECTS)

    async def remove_files(self, project_id: str, file_ids: Iterable[str]) -> None:
        project_id = _require_id(project_id, "Project id")
        ids = _clean_ids(file_ids)
        if not ids:
            raise ValidationError("At least one file id is required")
        mutation = self._begin("removeFiles", f"project:{project_id}", project_id, {"file_ids": ids})
        await self._execute(
            mutation, lambda: self._service.remove_files_from_project(project_id, ids)
        )
        self._cache.invalidate(PROJECTS)

    # -- documents --------------------------------------------------------------------------

    async def delete_document(self, document_id: str) -> None:
        document_id = _require_id(document_id, "Document id")
        target = f"document:{document_id}"
        self._ensure_idle(target)
        self._ask_confirmation("deleteDocument", document_id)
        mutation = self._begin("deleteDocument", target, document_id)
        await self._execute(mutation, lambda: self._service.delete_document(document_id))
        if self._poller is not None:
            self._poller.cancel(document_id)
        self._cache.invalidate(PROJECTS)
        self._cache.invalidate(DOCUMENTS)

    async def upload_document(
        self,
        filename: str,
        content: bytes,
        *,
        content_type: str = PDF_CONTENT_TYPE,
    ) -> Document:
        filename = (filename or "").strip()
        if not filename:
            raise ValidationError("Filename must not be empty")
        if content_type != PDF_CONTENT_TYPE:
            raise ValidationError(f"Only PDF uploads are supported (got {content_type!r})")
        if not content:
            raise ValidationError(f"{filename} is empty")
        if len(content) > self._max_upload_bytes:
            raise ValidationError(
                f"{filename} exceeds the upload limit of {self._max_upload_bytes} bytes"
            )

        mutation = self._begin("uploadDocument", f"upload:{filename}", payload={"filename": filename})
        receipt = await self._execute(
            mutation,
            lambda: self._service.upload_document(
                filename=filename,
                content=content,
                user_id=self._user_id,
                content_type=content_type,
            ),
        )
        mutation.entity_id = receipt.job_id

        doc = Document(
            document_id=receipt.job_id,
            filename=receipt.filename or filename,
            status=receipt.status,
            upload_date=datetime.now(timezone.utc),
        )
        self._cache.invalidate(DOCUMENTS)
        self._cache.put(DOCUMENTS, doc.document_id, doc)
        logger.info("Uploaded %s as job %s (%s)", filename, receipt.job_id, receipt.status.value)

        if self._poller is not None and not doc.status.is_terminal:
            self._poller.start(doc.document_id, job_id=receipt.job_id)
        return doc

    # -- optimistic overlays ----------------------------------------------------------------

    def apply_pending(self, projects: Iterable[Project]) -> list[Project]:
        """
        Project list as it will look once every pending mutation commits.

        The cache is not modified; this is for display only.
        """
        result = list(projects)
        for mutation in self._pending.values():
            op = mutation.operation
            if op == "createProject":
                result.append(
                    Project(
                        project_id=f"pending:{mutation.target}",
                        name=mutation.payload["name"],
                        document_ids=tuple(mutation.payload["file_ids"]),
                    )
                )
                continue
            updated: list[Project] = []
            for p in result:
                if p.project_id != mutation.entity_id:
                    if op == "deleteDocument" and mutation.entity_id in p.document_ids:
                        p = p.with_documents([d for d in p.document_ids if d != mutation.entity_id])
                    updated.append(p)
                    continue
                if op == "deleteProject":
                    continue
                if op == "renameProject":
                    p = p.renamed(mutation.payload["name"])
                elif op == "addFiles":
                    p = p.with_documents(list(p.document_ids) + mutation.payload["file_ids"])
                elif op == "removeFiles":
                    removed = set(mutation.payload["file_ids"])
                    p = p.with_documents([d for d in p.document_ids if d not in removed])
                updated.append(p)
            result = updated
        return result

    def apply_pending_documents(self, documents: Iterable[Document]) -> list[Document]:
        deleting = {
            m.entity_id for m in self._pending.values() if m.operation == "deleteDocument"
        }
        return [d for d in documents if d.document_id not in deleting]

    # -- internals --------------------------------------------------------------------------

    def _ask_confirmation(self, operation: str, entity_id: str) -> None:
        if self._confirm is not None and not self._confirm(operation, entity_id):
            raise ConfirmationDeclined(f"{operation} of {entity_id} was not confirmed")

    def _ensure_idle(self, target: str) -> None:
        if target in self._pending:
            raise InProgressError(target)

    def _begin(
        self,
        operation: str,
        target: str,
        entity_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Mutation:
        self._ensure_idle(target)
        mutation = Mutation(operation=operation, target=target, entity_id=entity_id, payload=payload or {})
        self._pending[target] = mutation
        self._history.append(mutation)
        return mutation

    async def _execute(self, mutation: Mutation, call: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await call()
        except ServiceError as e:
            mutation.state = MutationState.ROLLED_BACK
            mutation.error = e.detail or str(e)
            logger.warning("%s on %s failed: %s", mutation.operation, mutation.target, mutation.error)
            raise MutationError(mutation.operation, e.detail, entity_id=mutation.entity_id) from e
        except BaseException:
            mutation.state = MutationState.ROLLED_BACK
            raise
        finally:
            self._pending.pop(mutation.target, None)
        mutation.state = MutationState.COMMITTED
        return result

    async def _await_absorbed(self, project: Project) -> Project:
        # Callers navigate to the new project right away; make sure the cache can serve it.
        cached = await self._cache.get(PROJECTS, project.project_id)
        if cached is not None:
            return cached
        logger.info("Project %s not yet visible after refetch; caching create response", project.project_id)
        self._cache.put(PROJECTS, project.project_id, project)
        return project
