"""
Exception hierarchy for the prompt queue pipeline.

Every failure raised by the pipeline derives from AutoQueueError, which
carries a machine-readable error code and a context dict. The error code is
what crosses the message boundary between the host process and a page
agent; error_from_code() rebuilds the matching class on the receiving side.

Two families matter to the orchestrator:
1. Item-level failures (ElementNotFound, SubmissionRejected, ...) mark the
   current item as failed and the queue moves on.
2. Queue-halting failures (RateLimited, AgentUnavailable) stop the queue
   and are surfaced to the operator.
"""

from typing import Optional, Dict, Any, Type


class AutoQueueError(Exception):
    """
    Base exception for all pipeline errors.

    Catching AutoQueueError catches every error the pipeline raises on
    purpose; anything else reaching the orchestrator is a bug.
    """

    halts_queue: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize base exception.

        Args:
            message: Human-readable error description
            error_code: Machine-readable error code for classification
            context: Additional context data for debugging
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}

    def __str__(self) -> str:
        """String representation with error code."""
        if self.context:
            return f"[{self.error_code}] {self.message} | Context: {self.context}"
        return f"[{self.error_code}] {self.message}"


class ConfigurationError(AutoQueueError):
    """
    Raised when configuration is invalid or missing.

    This is a FATAL error - the application should not start.
    """
    pass


class StorageError(AutoQueueError):
    """Persistent store could not be read or written."""
    pass


class NetworkError(AutoQueueError):
    """
    Network-related errors talking to the prompt generation API.

    Retryable with exponential backoff.
    """

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {}) or {}
        context.update({
            "url": url,
            "status_code": status_code
        })
        super().__init__(message, context=context, **kwargs)


class GenerationClientError(AutoQueueError):
    """
    Prompt generation API or parsing error.

    Examples:
    - Provider rejected the request
    - Empty completion
    """

    def __init__(
        self,
        message: str,
        model_name: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {}) or {}
        context.update({"model_name": model_name})
        super().__init__(message, context=context, **kwargs)


class BrowserError(AutoQueueError):
    """
    Browser/Playwright-related errors.

    Examples:
    - Browser failed to launch
    - Target page could not be opened
    - Agent bootstrap could not be injected
    """
    pass


class ElementNotFound(AutoQueueError):
    """
    No visible prompt field matched any configured selector in time.
    """

    def __init__(
        self,
        message: str,
        selectors: Optional[list] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {}) or {}
        context.update({"selectors": selectors or []})
        super().__init__(message, context=context, **kwargs)


class SubmissionRejected(AutoQueueError):
    """
    The submit control stayed disabled after every retry.

    Usually means the host page's reactivity never noticed the typed text.
    """
    pass


class GenerationDidNotStart(AutoQueueError):
    """No loading indicator appeared within the start window."""
    pass


class GenerationTimedOut(AutoQueueError):
    """
    Generation did not finish within its hard timeout.
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {}) or {}
        context.update({"timeout_seconds": timeout_seconds})
        super().__init__(message, context=context, **kwargs)


class GenerationFailed(AutoQueueError):
    """The host page reported an error status for the generation."""
    pass


class AgentBusy(AutoQueueError):
    """A submit request arrived while the agent was not idle."""
    pass


class AgentUnavailable(AutoQueueError):
    """
    The page agent could not be reached or re-injected.

    Halts the queue: the operator should reload the target page.
    """

    halts_queue = True


class ReceivingEndMissing(AgentUnavailable):
    """
    Message delivery failed because nobody is listening at the address.

    The supervisor treats this class as recoverable: it re-establishes the
    agent and retries the send.
    """
    pass


class RateLimited(AutoQueueError):
    """
    The host page shows a rate-limit banner.

    Halts the queue: every following item would fail the same way.
    """

    halts_queue = True


_ERRORS_BY_CODE: Dict[str, Type[AutoQueueError]] = {
    cls.__name__: cls
    for cls in (
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
    )
}


def error_from_code(error_code: Optional[str], message: str) -> AutoQueueError:
    """
    Rebuild an exception received as {error, error_code} over a channel.

    Unknown or missing codes map to the base class, keeping the code.
    """
    cls = _ERRORS_BY_CODE.get(error_code or "")
    if cls is None:
        return AutoQueueError(message, error_code=error_code)
    return cls(message)
