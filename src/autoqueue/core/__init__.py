"""Core domain models and exceptions."""

from .exceptions import (
    AutoQueueError,
    ConfigurationError,
    StorageError,
    NetworkError,
    GenerationClientError,
    BrowserError,
    ElementNotFound,
    SubmissionRejected,
    GenerationDidNotStart,
    GenerationTimedOut,
    GenerationFailed,
    AgentBusy,
    AgentUnavailable,
    ReceivingEndMissing,
    RateLimited,
    error_from_code,
)
from .models import (
    PromptItem,
    QueueState,
    QueueConfig,
    QueueCounts,
    CommandResult,
    AgentMessage,
    AgentResponse,
    LimitCheckResult,
    SubmitControl,
    DetectedSettings,
    GenerationRequest,
    GenerationResponse,
    EnhancementResponse,
    recount,
)

__all__ = [
    # Exceptions
    "AutoQueueError",
    "ConfigurationError",
    "StorageError",
    "NetworkError",
    "GenerationClientError",
    "BrowserError",
    "ElementNotFound",
    "SubmissionRejected",
    "GenerationDidNotStart",
    "GenerationTimedOut",
    "GenerationFailed",
    "AgentBusy",
    "AgentUnavailable",
    "ReceivingEndMissing",
    "RateLimited",
    "error_from_code",
    # Models
    "PromptItem",
    "QueueState",
    "QueueConfig",
    "QueueCounts",
    "CommandResult",
    "AgentMessage",
    "AgentResponse",
    "LimitCheckResult",
    "SubmitControl",
    "DetectedSettings",
    "GenerationRequest",
    "GenerationResponse",
    "EnhancementResponse",
    "recount",
]
