from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from blackletter_core.errors import StatusTransitionError


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


# completed and failed share a rank: neither may follow the other.
_STATUS_RANK = {
    DocumentStatus.UPLOADED: 0,
    DocumentStatus.PROCESSING: 1,
    DocumentStatus.COMPLETED: 2,
    DocumentStatus.FAILED: 2,
}


def can_transition(current: DocumentStatus, new: DocumentStatus) -> bool:
    """
    Whether a document may move from `current` to `new`.

    Status only ever moves forward along uploaded -> processing -> {completed | failed}.
    Re-observing the same status is allowed; skipping a step forward is allowed because a
    poll can miss the intermediate state.
    """
    if current == new:
        return True
    if current.is_terminal:
        return False
    return new.rank > current.rank


def advance_status(current: DocumentStatus, new: DocumentStatus) -> DocumentStatus:
    if not can_transition(current, new):
        raise StatusTransitionError(current.value, new.value)
    return new


class Role(str, Enum):
    QUESTION = "question"
    ANSWER = "answer"


@dataclass(frozen=True)
class Document:
    document_id: str
    filename: str
    status: DocumentStatus = DocumentStatus.UPLOADED
    pages: int = 0
    upload_date: datetime | None = None
    error_message: str | None = None

    def with_status(self, status: DocumentStatus, *, error_message: str | None = None) -> Document:
        return replace(self, status=status, error_message=error_message or self.error_message)


@dataclass(frozen=True)
class Project:
    project_id: str
    name: str
    # References only; Document fields live on the Document records.
    document_ids: tuple[str, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def renamed(self, name: str) -> Project:
        return replace(self, name=name)

    def with_documents(self, document_ids: list[str] | tuple[str, ...]) -> Project:
        return replace(self, document_ids=tuple(dict.fromkeys(document_ids)))


@dataclass(frozen=True)
class Citation:
    label: str
    first_page: int
    last_page: int


@dataclass(frozen=True)
class Message:
    message_id: str
    seq: int
    role: Role
    text: str
    timestamp: datetime
    citations: tuple[Citation, ...] = field(default_factory=tuple)
    processing_time_s: float | None = None
    is_error: bool = False
