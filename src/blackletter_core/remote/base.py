from __future__ import annotations

from typing import Protocol

from blackletter_core.errors import BlackletterError
from blackletter_core.models import Document, Project
from blackletter_core.payloads import AnswerPayload, JobStatusPayload, UploadReceipt


class ServiceError(BlackletterError):
    """Any failed call across the remote boundary. Retryable by user action."""

    def __init__(self, message: str, *, detail: str | None = None):
        super().__init__(message)
        self.detail = detail


class ServiceTransportError(ServiceError):
    pass


class ServiceApplicationError(ServiceError):
    def __init__(self, message: str, *, status_code: int | None = None, detail: str | None = None):
        super().__init__(message, detail=detail)
        self.status_code = status_code


class RemoteService(Protocol):
    async def fetch_documents(self, user_id: str) -> list[Document]: ...

    async def fetch_projects(self) -> list[Project]: ...

    async def fetch_job_status(self, job_id: str) -> JobStatusPayload: ...

    async def create_project(self, name: str) -> Project: ...

    async def update_project(self, project_id: str, *, name: str | None = None) -> Project | None: ...

    async def delete_project(self, project_id: str) -> None: ...

    async def add_files_to_project(self, project_id: str, file_ids: list[str]) -> None: ...

    async def remove_files_from_project(self, project_id: str, file_ids: list[str]) -> None: ...

    async def delete_document(self, document_id: str) -> None: ...

    async def upload_document(
        self,
        *,
        filename: str,
        content: bytes,
        user_id: str,
        content_type: str = "application/pdf",
    ) -> UploadReceipt: ...

    async def ask_question(
        self,
        *,
        question: str,
        document_ids: list[str],
        user_id: str,
    ) -> AnswerPayload: ...
