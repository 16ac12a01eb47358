from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType

from blackletter_core.cache import DOCUMENTS, EntityCache
from blackletter_core.models import Document, DocumentStatus, can_transition
from blackletter_core.remote.base import RemoteService

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
TerminalListener = Callable[[str, DocumentStatus], None]


class PollPhase(str, Enum):
    PENDING = "pending"
    POLLING = "polling"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


@dataclass
class PollState:
    document_id: str
    job_id: str
    phase: PollPhase = PollPhase.PENDING
    current_status: DocumentStatus | None = None
    attempt_count: int = 0
    next_poll_at: float | None = None
    last_error: str | None = None
    cancelled: bool = False
    _done: asyncio.Future[DocumentStatus | None] | None = field(default=None, repr=False)
    _task: asyncio.Task[None] | None = field(default=None, repr=False)


class PollHandle:
    """Ties a poll to an observer; leaving the `with` block cancels it."""

    def __init__(self, poller: JobStatusPoller, state: PollState):
        self._poller = poller
        self.state = state

    def cancel(self) -> None:
        self._poller._cancel_state(self.state)

    def __enter__(self) -> PollHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cancel()

    async def __aenter__(self) -> PollHandle:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cancel()


class JobStatusPoller:
    """
    Tracks server-side processing of documents until each reaches a terminal status.

    One `PollState` exists per document while it is being polled. The loop for a document is
    pending -> polling -> scheduled -> polling ... and stops once the service reports
    `completed` or `failed`, at which point the status is written to the cache and the state
    is dropped. The delay between polls is constant.

    A failed status request is not a failed document: it is logged and retried on the same
    schedule without touching the document's status.
    """

    def __init__(
        self,
        service: RemoteService,
        cache: EntityCache,
        *,
        interval_s: float = 5.0,
        max_attempts: int | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        if max_attempts is not None and max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._service = service
        self._cache = cache
        self._interval_s = interval_s
        self._max_attempts = max_attempts
        self._sleep = sleep
        self._clock = clock
        self._states: dict[str, PollState] = {}
        self._listeners: list[TerminalListener] = []

    @property
    def interval_s(self) -> float:
        return self._interval_s

    def active(self, document_id: str) -> PollState | None:
        return self._states.get(document_id)

    def states(self) -> list[PollState]:
        return list(self._states.values())

    def on_terminal(self, listener: TerminalListener) -> None:
        self._listeners.append(listener)

    def start(self, document_id: str, *, job_id: str | None = None) -> PollState:
        existing = self._states.get(document_id)
        if existing is not None:
            return existing

        doc: Document | None = self._cache.peek(DOCUMENTS, document_id)
        state = PollState(
            document_id=document_id,
            job_id=job_id or document_id,
            current_status=doc.status if doc is not None else None,
        )
        state._done = asyncio.get_running_loop().create_future()
        self._states[document_id] = state
        state._task = asyncio.ensure_future(self._run(state))
        logger.debug("Started polling %s (job %s)", document_id, state.job_id)
        return state

    def watch(self, document_id: str, *, job_id: str | None = None) -> PollHandle:
        return PollHandle(self, self.start(document_id, job_id=job_id))

    async def wait(self, document_id: str) -> DocumentStatus | None:
        state = self._states.get(document_id)
        if state is None or state._done is None:
            doc: Document | None = self._cache.peek(DOCUMENTS, document_id)
            if doc is not None and doc.status.is_terminal:
                return doc.status
            return None
        return await asyncio.shield(state._done)

    def cancel(self, document_id: str) -> None:
        state = self._states.get(document_id)
        if state is not None:
            self._cancel_state(state)

    def cancel_all(self) -> None:
        for state in list(self._states.values()):
            self._cancel_state(state)

    # -- state machine ----------------------------------------------------------------------

    def _cancel_state(self, state: PollState) -> None:
        if state.cancelled or state.phase in (PollPhase.COMPLETED, PollPhase.FAILED):
            return
        state.cancelled = True
        was_scheduled = state.phase in (PollPhase.PENDING, PollPhase.SCHEDULED)
        state.phase = PollPhase.CANCELLED
        state.next_poll_at = None
        self._drop(state, None)
        # An in-flight status request is left to finish; its response is discarded.
        if was_scheduled and state._task is not None:
            state._task.cancel()
        logger.debug("Cancelled polling of %s", state.document_id)

    async def _run(self, state: PollState) -> None:
        try:
            await self._poll_until_done(state)
        except Exception as e:  # noqa: BLE001
            logger.exception("Polling of %s stopped unexpectedly", state.document_id)
            state.last_error = str(e)
            if state.phase not in (PollPhase.COMPLETED, PollPhase.FAILED, PollPhase.CANCELLED):
                state.phase = PollPhase.EXHAUSTED
        finally:
            # However the loop ended, the state is released and waiters are woken.
            self._drop(state, None)

    async def _poll_until_done(self, state: PollState) -> None:
        while not state.cancelled:
            state.phase = PollPhase.POLLING
            state.next_poll_at = None
            state.attempt_count += 1
            try:
                payload = await self._service.fetch_job_status(state.job_id)
            except Exception as e:  # noqa: BLE001
                if state.cancelled:
                    return
                state.last_error = str(e)
                logger.warning(
                    "Status check %d for %s failed; retrying in %.1fs: %s",
                    state.attempt_count,
                    state.document_id,
                    self._interval_s,
                    e,
                )
            else:
                if state.cancelled:
                    logger.debug("Discarding status for cancelled poll of %s", state.document_id)
                    return
                state.last_error = None
                if self._observe(state, payload.status, payload.error_message):
                    return

            if self._max_attempts is not None and state.attempt_count >= self._max_attempts:
                logger.warning(
                    "Giving up on %s after %d status checks (last status %s)",
                    state.document_id,
                    state.attempt_count,
                    state.current_status.value if state.current_status else None,
                )
                state.phase = PollPhase.EXHAUSTED
                self._drop(state, None)
                return

            state.phase = PollPhase.SCHEDULED
            state.next_poll_at = self._clock() + self._interval_s
            await self._sleep(self._interval_s)

    def _observe(self, state: PollState, status: DocumentStatus, error_message: str | None) -> bool:
        previous = state.current_status
        if previous is not None and not can_transition(previous, status):
            logger.warning(
                "Ignoring backward status %s -> %s for %s",
                previous.value,
                status.value,
                state.document_id,
            )
            return False
        if previous != status:
            logger.info("Document %s is now %s", state.document_id, status.value)
        state.current_status = status
        self._write_status(state.document_id, status, error_message)

        if not status.is_terminal:
            return False
        state.phase = PollPhase.COMPLETED if status == DocumentStatus.COMPLETED else PollPhase.FAILED
        self._drop(state, status)
        for listener in list(self._listeners):
            try:
                listener(state.document_id, status)
            except Exception:  # noqa: BLE001
                logger.exception("Terminal listener failed for %s", state.document_id)
        return True

    def _write_status(self, document_id: str, status: DocumentStatus, error_message: str | None) -> None:
        # Re-read after the await: the snapshot taken before the request may be outdated.
        doc: Document | None = self._cache.peek(DOCUMENTS, document_id)
        if doc is None:
            logger.debug("Document %s not in cache; status %s not written", document_id, status.value)
            return
        if doc.status == status or not can_transition(doc.status, status):
            return
        self._cache.put(DOCUMENTS, document_id, doc.with_status(status, error_message=error_message))

    def _drop(self, state: PollState, result: DocumentStatus | None) -> None:
        if self._states.get(state.document_id) is state:
            del self._states[state.document_id]
        state.next_poll_at = None
        if state._done is not None and not state._done.done():
            state._done.set_result(result)
