from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from itertools import count

import pytest

from blackletter_core.cache import DOCUMENTS, PROJECTS, EntityCache, document_key, merge_document, project_key
from blackletter_core.models import Document, DocumentStatus, Project
from blackletter_core.payloads import AnswerPayload, JobStatusPayload, UploadReceipt
from blackletter_core.remote.base import ServiceApplicationError


class FakeRemoteService:
    """In-memory stand-in for the remote document service."""

    def __init__(self) -> None:
        self.documents: dict[str, Document] = {}
        self.projects: dict[str, Project] = {}
        self.calls: list[tuple] = []
        self.failures: dict[str, Exception] = {}
        self.job_statuses: dict[str, list[DocumentStatus | Exception]] = {}
        self.answer: AnswerPayload | Exception = AnswerPayload(
            answer="The lease term is five years.",
            sources="pp.12-15, p.23",
            processing_time=1.5,
        )
        # When set, remote calls block until the event is set.
        self.gate: asyncio.Event | None = None
        self._ids = count(1)

    def add_document(self, document_id: str, *, status: DocumentStatus = DocumentStatus.COMPLETED, **kw) -> Document:
        doc = Document(document_id=document_id, filename=kw.pop("filename", f"{document_id}.pdf"), status=status, **kw)
        self.documents[document_id] = doc
        return doc

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    async def _enter(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    async def fetch_documents(self, user_id: str) -> list[Document]:
        await self._enter("fetch_documents", user_id)
        return list(self.documents.values())

    async def fetch_projects(self) -> list[Project]:
        await self._enter("fetch_projects")
        return list(self.projects.values())

    async def fetch_job_status(self, job_id: str) -> JobStatusPayload:
        await self._enter("fetch_job_status", job_id)
        script = self.job_statuses.get(job_id) or [DocumentStatus.PROCESSING]
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        return JobStatusPayload(job_id=job_id, status=step)

    async def create_project(self, name: str) -> Project:
        await self._enter("create_project", name)
        project = Project(project_id=f"proj_{next(self._ids)}", name=name)
        self.projects[project.project_id] = project
        return project

    async def update_project(self, project_id: str, *, name: str | None = None) -> Project | None:
        await self._enter("update_project", project_id, name)
        project = self._project(project_id)
        if name is not None:
            project = project.renamed(name)
        self.projects[project_id] = project
        return project

    async def delete_project(self, project_id: str) -> None:
        await self._enter("delete_project", project_id)
        self._project(project_id)
        del self.projects[project_id]

    async def add_files_to_project(self, project_id: str, file_ids: list[str]) -> None:
        await self._enter("add_files_to_project", project_id, tuple(file_ids))
        project = self._project(project_id)
        self.projects[project_id] = project.with_documents(list(project.document_ids) + file_ids)

    async def remove_files_from_project(self, project_id: str, file_ids: list[str]) -> None:
        await self._enter("remove_files_from_project", project_id, tuple(file_ids))
        project = self._project(project_id)
        self.projects[project_id] = project.with_documents(
            [d for d in project.document_ids if d not in file_ids]
        )

    async def delete_document(self, document_id: str) -> None:
        await self._enter("delete_document", document_id)
        self.documents.pop(document_id, None)

    async def upload_document(
        self,
        *,
        filename: str,
        content: bytes,
        user_id: str,
        content_type: str = "application/pdf",
    ) -> UploadReceipt:
        await self._enter("upload_document", filename, user_id)
        job_id = f"job_{next(self._ids)}"
        self.documents[job_id] = Document(
            document_id=job_id,
            filename=filename,
            status=DocumentStatus.PROCESSING,
            upload_date=datetime.now(timezone.utc),
        )
        return UploadReceipt(job_id=job_id, filename=filename, status=DocumentStatus.PROCESSING)

    async def ask_question(self, *, question: str, document_ids: list[str], user_id: str) -> AnswerPayload:
        await self._enter("ask_question", question, tuple(document_ids))
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer

    def _project(self, project_id: str) -> Project:
        project = self.projects.get(project_id)
        if project is None:
            raise ServiceApplicationError("Project not found", status_code=404, detail="Project not found")
        return project


class FakeSleep:
    """Records requested delays and yields to the loop instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture()
def service() -> FakeRemoteService:
    return FakeRemoteService()


@pytest.fixture()
def cache(service: FakeRemoteService) -> EntityCache:
    c = EntityCache()
    c.register(DOCUMENTS, lambda: service.fetch_documents("user-1"), key_fn=document_key, merge=merge_document)
    c.register(PROJECTS, service.fetch_projects, key_fn=project_key)
    return c


@pytest.fixture()
def fake_sleep() -> FakeSleep:
    return FakeSleep()


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
