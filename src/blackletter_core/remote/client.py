from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from blackletter_core.models import Document, Project
from blackletter_core.payloads import AnswerPayload, JobStatusPayload, UploadReceipt
from blackletter_core.remote import adapter
from blackletter_core.remote.base import ServiceApplicationError, ServiceTransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpRemoteService:
    """
    `RemoteService` over the document Q&A HTTP API.

    Every response is normalized through `blackletter_core.remote.adapter`; callers only ever
    see canonical models or a `ServiceError`.
    """

    base_url: str
    # Projects are listed per account handle, which is not always the upload user id.
    projects_owner: str
    api_key: str | None = None
    timeout_s: float = 30.0
    transport: httpx.AsyncBaseTransport | None = None

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"X-API-Key": self.api_key}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url.rstrip("/"),
            timeout=self.timeout_s,
            headers=self._headers(),
            transport=self.transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        logger.debug("%s %s", method, path)
        try:
            async with self._client() as client:
                r = await client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise ServiceTransportError(f"{method} {path} failed: {e}") from e
        if r.is_error:
            detail = adapter.error_detail(_body(r))
            raise ServiceApplicationError(
                f"{method} {path} returned {r.status_code}",
                status_code=r.status_code,
                detail=detail,
            )
        if not r.content:
            return None
        return _body(r)

    async def fetch_documents(self, user_id: str) -> list[Document]:
        data = await self._request("GET", "/documents", params={"user_id": user_id})
        return adapter.documents_from_payload(data)

    async def fetch_projects(self) -> list[Project]:
        data = await self._request("GET", f"/user/{self.projects_owner}/projects")
        return adapter.projects_from_payload(data)

    async def fetch_job_status(self, job_id: str) -> JobStatusPayload:
        data = await self._request("GET", f"/status/{job_id}")
        return adapter.job_status_from_payload(data)

    async def create_project(self, name: str) -> Project:
        data = await self._request("POST", "/projects", json={"name": name})
        return adapter.project_from_mutation(data)

    async def update_project(self, project_id: str, *, name: str | None = None) -> Project | None:
        body: dict[str, Any] = {}
        if name is not None:
            body["name"] = name
        data = await self._request("PUT", f"/projects/{project_id}", json=body)
        if data is None:
            return None
        return adapter.project_from_payload(adapter.unwrap_object(data, "project"))

    async def delete_project(self, project_id: str) -> None:
        await self._request("DELETE", f"/projects/{project_id}")

    async def add_files_to_project(self, project_id: str, file_ids: list[str]) -> None:
        await self._request("POST", f"/projects/{project_id}/files", json={"file_ids": file_ids})

    async def remove_files_from_project(self, project_id: str, file_ids: list[str]) -> None:
        await self._request("DELETE", f"/projects/{project_id}/files", json={"file_ids": file_ids})

    async def delete_document(self, document_id: str) -> None:
        await self._request("DELETE", f"/documents/{document_id}")

    async def upload_document(
        self,
        *,
        filename: str,
        content: bytes,
        user_id: str,
        content_type: str = "application/pdf",
    ) -> UploadReceipt:
        data = await self._request(
            "POST",
            "/upload",
            files={"file": (filename, content, content_type)},
            data={"user_id": user_id},
        )
        return adapter.upload_receipt_from_payload(data)

    async def ask_question(
        self,
        *,
        question: str,
        document_ids: list[str],
        user_id: str,
    ) -> AnswerPayload:
        data = await self._request(
            "POST",
            "/ask",
            json={"question": question, "document_ids": document_ids, "user_id": user_id},
        )
        return adapter.answer_from_payload(data)


def _body(r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError:
        return r.text
