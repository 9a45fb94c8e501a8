"""idlc -- configurable lifecycle workflow engine with inheritable team configs."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("idlc")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from idlc.core import Lifecycle
from idlc.engine import (
    ActorContext,
    ApprovalPendingError,
    ConflictError,
    CriteriaUnmetError,
    IllegalTransitionError,
    TransitionEngine,
    TransitionError,
    TransitionResult,
)
from idlc.events import ExternalEvent, TransitionApplied
from idlc.items import WorkItem
from idlc.registry import ConfigRegistry
from idlc.resolver import ConfigResolutionError
from idlc.schema import ResolvedConfig, TeamConfig
from idlc.validator import ValidationError

__all__ = [
    "ActorContext",
    "ApprovalPendingError",
    "ConfigRegistry",
    "ConfigResolutionError",
    "ConflictError",
    "CriteriaUnmetError",
    "ExternalEvent",
    "IllegalTransitionError",
    "Lifecycle",
    "ResolvedConfig",
    "TeamConfig",
    "TransitionApplied",
    "TransitionEngine",
    "TransitionError",
    "TransitionResult",
    "ValidationError",
    "WorkItem",
    "__version__",
]
