"""
Normalization of remote payloads into the canonical models.

The service is inconsistent about response shapes: collections arrive either as bare arrays
or wrapped as `{"success": true, "projects": [...]}`, project files are listed under either
`files` or `documents`, and project ids appear as `id`, `project_id` or `projectId`. Nothing
outside this module branches on those differences.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import pydantic

from blackletter_core.models import Document, DocumentStatus, Project
from blackletter_core.payloads import AnswerPayload, JobStatusPayload, UploadReceipt
from blackletter_core.remote.base import ServiceApplicationError

logger = logging.getLogger(__name__)

_PROJECT_ID_KEYS = ("id", "project_id", "projectId")
_DOCUMENT_ID_KEYS = ("document_id", "documentId", "id", "job_id")


def _first(payload: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_status(value: Any) -> DocumentStatus | None:
    if isinstance(value, DocumentStatus):
        return value
    if not isinstance(value, str):
        return None
    try:
        return DocumentStatus(value.strip().lower())
    except ValueError:
        return None


def unwrap_list(payload: Any, key: str) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for candidate in (key, "data", "items", "results"):
            value = payload.get(candidate)
            if isinstance(value, list):
                return value
    raise ServiceApplicationError(f"Unexpected {key} response shape")


def unwrap_object(payload: Any, key: str) -> dict[str, Any]:
    if isinstance(payload, dict):
        inner = payload.get(key)
        if isinstance(inner, dict):
            return inner
        return payload
    raise ServiceApplicationError(f"Unexpected {key} response shape")


def document_from_payload(payload: Any) -> Document | None:
    if not isinstance(payload, dict):
        return None
    document_id = _first(payload, _DOCUMENT_ID_KEYS)
    if document_id is None:
        return None
    raw_status = payload.get("status")
    status = parse_status(raw_status)
    if status is None:
        logger.warning("Document %s has unrecognized status %r; treating as uploaded", document_id, raw_status)
        status = DocumentStatus.UPLOADED
    pages = payload.get("pages")
    return Document(
        document_id=str(document_id),
        filename=str(payload.get("filename") or payload.get("name") or ""),
        status=status,
        pages=pages if isinstance(pages, int) and pages >= 0 else 0,
        upload_date=parse_timestamp(payload.get("upload_date") or payload.get("uploadDate")),
        error_message=payload.get("error_message") or None,
    )


def documents_from_payload(payload: Any) -> list[Document]:
    documents: list[Document] = []
    for item in unwrap_list(payload, "documents"):
        doc = document_from_payload(item)
        if doc is None:
            logger.warning("Skipping malformed document record: %r", item)
            continue
        documents.append(doc)
    return documents


def _project_file_ids(payload: dict[str, Any]) -> list[str]:
    files = payload.get("documents")
    if files is None:
        files = payload.get("files")
    if files is None:
        files = payload.get("document_ids") or payload.get("file_ids")
    ids: list[str] = []
    for item in files or []:
        if isinstance(item, str) and item:
            ids.append(item)
        elif isinstance(item, dict):
            ref = _first(item, _DOCUMENT_ID_KEYS)
            if ref is not None:
                ids.append(str(ref))
    # Keep first occurrence; a project references each document once.
    return list(dict.fromkeys(ids))


def project_from_payload(payload: Any) -> Project | None:
    if not isinstance(payload, dict):
        return None
    project_id = _first(payload, _PROJECT_ID_KEYS)
    if project_id is None:
        return None
    return Project(
        project_id=str(project_id),
        name=str(payload.get("name") or ""),
        document_ids=tuple(_project_file_ids(payload)),
        created_at=parse_timestamp(payload.get("created_at") or payload.get("createdAt")),
        updated_at=parse_timestamp(payload.get("updated_at") or payload.get("updatedAt")),
    )


def projects_from_payload(payload: Any) -> list[Project]:
    projects: list[Project] = []
    for item in unwrap_list(payload, "projects"):
        project = project_from_payload(item)
        if project is None:
            logger.warning("Skipping malformed project record: %r", item)
            continue
        projects.append(project)
    return projects


def project_from_mutation(payload: Any) -> Project:
    project = project_from_payload(unwrap_object(payload, "project"))
    if project is None:
        raise ServiceApplicationError("Project response is missing an id")
    return project


def _validate(model: type[pydantic.BaseModel], payload: Any, what: str) -> Any:
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ServiceApplicationError(f"Unexpected {what} response shape", detail=str(e)) from e


def job_status_from_payload(payload: Any) -> JobStatusPayload:
    return _validate(JobStatusPayload, payload, "status")


def upload_receipt_from_payload(payload: Any) -> UploadReceipt:
    return _validate(UploadReceipt, payload, "upload")


def answer_from_payload(payload: Any) -> AnswerPayload:
    return _validate(AnswerPayload, payload, "answer")


def error_detail(payload: Any) -> str | None:
    if isinstance(payload, dict):
        for key in ("detail", "message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()[:500]
    return None
