"""Exception taxonomy and provider error catalog.

Every error raised by the engine is a :class:`CascadeError` carrying a
machine-readable ``code``. Errors coming back from providers are classified
with :func:`parse_api_error` into a user-facing title and message.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any


class CascadeError(Exception):
    """Base class for cascade engine errors.

    Attributes:
        code: Machine error code for programmatic handling upstream.
        details: Optional structured context.
    """

    code = "CASCADE_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class CascadeAbort(CascadeError):
    """Intentional early exit of a run. Not a failure."""

    code = "CASCADE_ABORTED"


class CascadeCancelledError(CascadeAbort):
    """The user cancelled the run."""

    code = "USER_CANCELLED"


class QuestionCancelledError(CascadeAbort):
    """The user dismissed a clarifying question."""

    code = "QUESTION_CANCELLED"


class ConcurrentExecutionError(CascadeError):
    """A cascade is already running for this root node."""

    code = "CONCURRENT_EXECUTION"


class HierarchyError(CascadeError):
    """The prompt hierarchy could not be loaded."""

    code = "HIERARCHY_FETCH_FAILED"


class ProviderError(CascadeError):
    """An execution backend call failed.

    Attributes:
        status: HTTP status, if the failure came from an HTTP response.
        retry_after_s: Provider-supplied retry hint in seconds.
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status: int | None = None,
        retry_after_s: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.status = status
        self.retry_after_s = retry_after_s


class NoResponseError(CascadeError):
    """The execution finished without any response text."""

    code = "NO_RESPONSE"


class MaxQuestionsExceededError(CascadeError):
    """A node kept asking questions past its cap."""

    code = "MAX_QUESTIONS_EXCEEDED"


class RateLimitExhaustedError(CascadeError):
    """A node was rate-limited more times than allowed."""

    code = "RATE_LIMIT_EXHAUSTED"


class BackgroundWaitError(CascadeError):
    """A background response never reached a usable terminal state."""

    code = "BACKGROUND_WAIT_FAILED"


class ExternalTaskError(CascadeError):
    """An external agentic task failed, was cancelled or timed out.

    Attributes:
        task_id: Remote task id, when the task was created.
        task_url: Link to the remote task.
    """

    code = "TASK_FAILED"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        task_id: str | None = None,
        task_url: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.task_id = task_id
        self.task_url = task_url


class JsonExtractionError(CascadeError):
    """A post-action response did not contain parseable JSON."""

    code = "JSON_PARSE_ERROR"


class ActionValidationError(CascadeError):
    """A post-action response does not have the configured shape.

    Attributes:
        available_arrays: Top-level keys that do hold arrays.
        suggestion: Hint for fixing the configuration.
    """

    code = "ACTION_VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        available_arrays: list[str] | None = None,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message)
        self.available_arrays = available_arrays or []
        self.suggestion = suggestion


# =============================================================================
# Provider error catalog
# =============================================================================


@dataclass(frozen=True)
class ErrorPattern:
    pattern: re.Pattern[str]
    code: str
    title: str
    message: str
    recoverable: bool


@dataclass
class ParsedApiError:
    """User-facing classification of an error."""

    code: str
    title: str
    message: str
    recoverable: bool
    original: str


def _p(regex: str, code: str, title: str, message: str, recoverable: bool) -> ErrorPattern:
    return ErrorPattern(re.compile(regex, re.IGNORECASE), code, title, message, recoverable)


# Most specific first
ERROR_PATTERNS: tuple[ErrorPattern, ...] = (
    _p(
        r"exceeded your current quota|insufficient_quota",
        "QUOTA_EXCEEDED",
        "Quota Exceeded",
        "Your provider API quota has been exceeded. Check your billing settings.",
        False,
    ),
    _p(
        r"rate limit|try again in [0-9.]+s",
        "RATE_LIMITED",
        "Rate Limited",
        "Too many requests. The system will automatically retry.",
        True,
    ),
    _p(
        r"idle.?timeout|no response data received|connection may have stalled",
        "IDLE_TIMEOUT",
        "Response Timeout",
        "The model took too long to respond. Please try again.",
        True,
    ),
    _p(
        r"conversation_locked|another process.*operating|conversation.*currently in use",
        "CONVERSATION_BUSY",
        "Conversation Busy",
        "The conversation is processing another request. Wait a moment and try again.",
        True,
    ),
    _p(
        r"TASK_TIMEOUT|task.*timed? ?out",
        "TASK_TIMEOUT",
        "Task Timeout",
        "The external task took too long to complete.",
        False,
    ),
    _p(
        r"TASK_FAILED|task failed",
        "TASK_FAILED",
        "Task Failed",
        "The external task failed. Check the task URL for details.",
        False,
    ),
    _p(
        r"TASK_CANCELLED|task cancelled",
        "TASK_CANCELLED",
        "Task Cancelled",
        "The external task was cancelled.",
        False,
    ),
    _p(
        r"TASK_REQUIRES_INPUT|input.?required",
        "TASK_REQUIRES_INPUT",
        "Interactive Input Required",
        "The external task asked for interactive input, which cascade runs do not support.",
        False,
    ),
    _p(
        r"TASK_CREATE_FAILED|failed to create task",
        "TASK_CREATE_FAILED",
        "Task Creation Failed",
        "The external task could not be created.",
        True,
    ),
    _p(
        r"invalid.*api.*key",
        "INVALID_API_KEY",
        "Invalid API Key",
        "The provider API key is invalid. Check your configuration.",
        False,
    ),
    _p(
        r"model.*not.*found",
        "MODEL_NOT_FOUND",
        "Model Not Available",
        "The requested model is not available. Try a different model.",
        False,
    ),
    _p(
        r"context.*length.*exceeded",
        "CONTEXT_TOO_LONG",
        "Content Too Long",
        "The prompt or context is too long for the selected model.",
        False,
    ),
    _p(
        r"no message.*content",
        "NO_MESSAGE_CONTENT",
        "Empty Prompt",
        "The prompt has no content. Add text to the user or admin prompt.",
        False,
    ),
    _p(
        r"failed to fetch|network error|ECONNREFUSED|ENOTFOUND|cannot connect to host",
        "NETWORK_ERROR",
        "Network Error",
        "Unable to connect. Check your network connection.",
        True,
    ),
    _p(
        r"server.*error|internal.*error|status.*500|\b500\b.*error",
        "SERVER_ERROR",
        "Server Error",
        "A server error occurred. Please try again.",
        True,
    ),
)

_PATTERNS_BY_CODE = {p.code: p for p in ERROR_PATTERNS}


def _error_code_of(error: BaseException | str) -> str | None:
    if isinstance(error, str):
        return None
    code = getattr(error, "code", None)
    return code if isinstance(code, str) else None


def parse_api_error(error: BaseException | str) -> ParsedApiError:
    """Classify an error: explicit error code first, then message patterns."""
    message = error if isinstance(error, str) else str(error) or type(error).__name__

    code = _error_code_of(error)
    if code and code in _PATTERNS_BY_CODE:
        match = _PATTERNS_BY_CODE[code]
        return ParsedApiError(match.code, match.title, match.message, match.recoverable, message)

    for pattern in ERROR_PATTERNS:
        if pattern.pattern.search(message):
            return ParsedApiError(
                pattern.code, pattern.title, pattern.message, pattern.recoverable, message
            )

    return ParsedApiError(
        code=code or "UNKNOWN_ERROR",
        title="Error",
        message=message,
        recoverable=True,
        original=message,
    )


def is_quota_error(error: BaseException | str) -> bool:
    return parse_api_error(error).code == "QUOTA_EXCEEDED"


def is_recoverable_error(error: BaseException | str) -> bool:
    return parse_api_error(error).recoverable


@dataclass
class FormattedError:
    title: str
    description: str
    code: str
    recoverable: bool


def format_error_for_display(error: BaseException | str, prompt_name: str | None = None) -> FormattedError:
    """Title/description pair for a notification or dialog."""
    parsed = parse_api_error(error)
    title = f"{parsed.title}: {prompt_name}" if prompt_name else parsed.title
    return FormattedError(
        title=title,
        description=parsed.message,
        code=parsed.code,
        recoverable=parsed.recoverable,
    )
