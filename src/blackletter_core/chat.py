from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from uuid import uuid4

from blackletter_core.cache import DOCUMENTS, EntityCache
from blackletter_core.citations import parse_citations
from blackletter_core.errors import InProgressError, ValidationError
from blackletter_core.models import Message, Role
from blackletter_core.remote.base import RemoteService

logger = logging.getLogger(__name__)

APOLOGY_TEXT = "Sorry, I encountered an error while processing your question. Please try again."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession:
    """
    Ordered question/answer transcript over a set of selected documents.

    At most one question is outstanding at a time. The question message is appended before
    the request is issued, so the transcript always shows the question ahead of its answer;
    a failed request still produces an answer message carrying a fixed apology.
    """

    def __init__(
        self,
        service: RemoteService,
        cache: EntityCache,
        *,
        user_id: str,
        document_ids: Iterable[str] = (),
        now: Callable[[], datetime] = _utcnow,
    ):
        self.session_id = uuid4().hex
        self._service = service
        self._cache = cache
        self._user_id = user_id
        self._now = now
        self._messages: list[Message] = []
        self._next_seq = 1
        self._inflight = False
        self._closed = False
        self._selected: list[str] = list(dict.fromkeys(document_ids))

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def pending(self) -> bool:
        return self._inflight

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def selected_document_ids(self) -> list[str]:
        return self._known(self._selected)

    def select(self, document_ids: Iterable[str]) -> list[str]:
        self._selected = self._known(document_ids)
        return list(self._selected)

    def toggle(self, document_id: str) -> list[str]:
        if document_id in self._selected:
            self._selected.remove(document_id)
        elif document_id in self._cache.known_ids(DOCUMENTS):
            self._selected.append(document_id)
        return list(self._selected)

    def close(self) -> None:
        """Drop the session. A response still in flight will be discarded when it lands."""
        self._closed = True

    async def submit(self, question: str, selected_document_ids: Iterable[str] | None = None) -> Message | None:
        """
        Ask `question` about the selected documents.

        Returns the answer message, or None when the session was closed before the response
        arrived.
        """
        if self._closed:
            raise ValidationError("Chat session is closed")
        text = (question or "").strip()
        if not text:
            raise ValidationError("Question must not be empty")
        if selected_document_ids is not None:
            doc_ids = self._known(selected_document_ids)
        else:
            doc_ids = self.selected_document_ids
        if not doc_ids:
            raise ValidationError("Select at least one document to ask a question")
        if self._inflight:
            raise InProgressError(f"chat:{self.session_id}")

        self._selected = list(doc_ids)
        self._append(Role.QUESTION, text)
        self._inflight = True
        try:
            payload = await self._service.ask_question(
                question=text,
                document_ids=doc_ids,
                user_id=self._user_id,
            )
        except asyncio.CancelledError:
            if not self._closed:
                self._append(Role.ANSWER, APOLOGY_TEXT, is_error=True)
            raise
        except Exception as e:  # noqa: BLE001
            if self._closed:
                return None
            logger.warning("Question in session %s failed: %s", self.session_id, e)
            return self._append(Role.ANSWER, APOLOGY_TEXT, is_error=True)
        finally:
            self._inflight = False

        if self._closed:
            logger.debug("Discarding answer for closed session %s", self.session_id)
            return None
        return self._append(
            Role.ANSWER,
            payload.answer,
            citations=parse_citations(payload.sources),
            processing_time_s=payload.processing_time,
        )

    def _known(self, document_ids: Iterable[str]) -> list[str]:
        known = self._cache.known_ids(DOCUMENTS)
        requested = list(dict.fromkeys(document_ids))
        kept = [d for d in requested if d in known]
        if len(kept) != len(requested):
            logger.debug("Dropped unknown document ids from selection: %s", sorted(set(requested) - known))
        return kept

    def _append(
        self,
        role: Role,
        text: str,
        *,
        citations: list | None = None,
        processing_time_s: float | None = None,
        is_error: bool = False,
    ) -> Message:
        message = Message(
            message_id=uuid4().hex,
            seq=self._next_seq,
            role=role,
            text=text,
            timestamp=self._now(),
            citations=tuple(citations or ()),
            processing_time_s=processing_time_s,
            is_error=is_error,
        )
        self._next_seq += 1
        self._messages.append(message)
        return message


class ChatSessionController:
    """Owns the chat session of the currently open chat view."""

    def __init__(self, service: RemoteService, cache: EntityCache, *, user_id: str):
        self._service = service
        self._cache = cache
        self._user_id = user_id
        self._current: ChatSession | None = None

    @property
    def current(self) -> ChatSession | None:
        return self._current

    def open(self, document_ids: Iterable[str] = ()) -> ChatSession:
        self.close()
        self._current = ChatSession(
            self._service,
            self._cache,
            user_id=self._user_id,
            document_ids=document_ids,
        )
        return self._current

    def close(self) -> None:
        if self._current is not None:
            self._current.close()
            self._current = None
