from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from blackletter_core.models import DocumentStatus


def _normalize_status(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


class UploadReceipt(BaseModel):
    model_config = ConfigDict(extra="ignore")

    job_id: str = Field(validation_alias=AliasChoices("job_id", "jobId", "document_id"))
    filename: str
    status: DocumentStatus = DocumentStatus.UPLOADED
    message: str | None = None
    s3_key: str | None = None

    normalize_status = field_validator("status", mode="before")(_normalize_status)


class JobStatusPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    job_id: str | None = Field(default=None, validation_alias=AliasChoices("job_id", "jobId"))
    status: DocumentStatus
    filename: str | None = None
    pages: int | None = None
    chunks: int | None = None
    processed_date: datetime | None = None
    error_message: str | None = None

    normalize_status = field_validator("status", mode="before")(_normalize_status)


class AnswerPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    answer: str = ""
    sources: str | list[str] | None = None
    processing_time: float | None = Field(
        default=None, validation_alias=AliasChoices("processing_time", "processingTime")
    )
    document_ids: list[str] = Field(default_factory=list)
