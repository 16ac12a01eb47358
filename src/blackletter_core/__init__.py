from blackletter_core.cache import DOCUMENTS, PROJECTS, CacheEvent, CacheView, EntityCache
from blackletter_core.chat import APOLOGY_TEXT, ChatSession, ChatSessionController
from blackletter_core.citations import parse_citations
from blackletter_core.config import Settings, load_settings
from blackletter_core.errors import (
    BlackletterError,
    ConfirmationDeclined,
    InProgressError,
    MutationError,
    TransientFetchError,
    ValidationError,
)
from blackletter_core.models import Citation, Document, DocumentStatus, Message, Project, Role
from blackletter_core.mutations import Mutation, MutationOrchestrator, MutationState
from blackletter_core.poller import JobStatusPoller, PollPhase, PollState
from blackletter_core.selection import SelectionCoordinator, ToggleSet
from blackletter_core.workspace import Workspace

__all__ = [
    "__version__",
    "APOLOGY_TEXT",
    "BlackletterError",
    "CacheEvent",
    "CacheView",
    "ChatSession",
    "ChatSessionController",
    "Citation",
    "ConfirmationDeclined",
    "DOCUMENTS",
    "Document",
    "DocumentStatus",
    "EntityCache",
    "InProgressError",
    "JobStatusPoller",
    "Message",
    "Mutation",
    "MutationError",
    "MutationOrchestrator",
    "MutationState",
    "PROJECTS",
    "PollPhase",
    "PollState",
    "Project",
    "Role",
    "SelectionCoordinator",
    "Settings",
    "ToggleSet",
    "TransientFetchError",
    "ValidationError",
    "Workspace",
    "load_settings",
    "parse_citations",
]

__version__ = "0.1.0"
