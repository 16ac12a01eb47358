from __future__ import annotations


class BlackletterError(Exception):
    pass


class ValidationError(BlackletterError):
    """A local precondition failed. No network call was made."""


class ConfirmationDeclined(ValidationError):
    pass


class InProgressError(BlackletterError):
    """A conflicting operation on the same entity or session is still outstanding."""

    def __init__(self, target: str):
        super().__init__(f"Operation already in progress for {target}")
        self.target = target


class MutationError(BlackletterError):
    def __init__(self, operation: str, message: str | None = None, *, entity_id: str | None = None):
        text = f"{operation} failed"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)
        self.operation = operation
        self.message = message
        self.entity_id = entity_id


class TransientFetchError(BlackletterError):
    def __init__(self, entity_type: str, key: str | None, cause: BaseException | None = None):
        target = entity_type if key is None else f"{entity_type}:{key}"
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Could not refresh {target}{detail}")
        self.entity_type = entity_type
        self.key = key
        self.cause = cause


class StatusTransitionError(BlackletterError):
    def __init__(self, current: str, new: str):
        super().__init__(f"Illegal document status transition {current!r} -> {new!r}")
        self.current = current
        self.new = new
