"""Error classification and recovery recommendations.

The handler never retries or recovers by itself. It builds structured error
records, keeps a bounded history of them, and tells the caller whether a
retry or a user-facing recovery makes sense. The detector and the state
machine act on that recommendation.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 50
RECENT_ERRORS = 10


class ErrorCode(str, Enum):
    """Kinds of tutorial failures."""

    NETWORK_ERROR = "NETWORK_ERROR"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    ACTION_TIMEOUT = "ACTION_TIMEOUT"
    ELEMENT_NOT_FOUND = "ELEMENT_NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    USER_CANCELLED = "USER_CANCELLED"
    INITIALIZATION_FAILED = "INITIALIZATION_FAILED"
    STEP_VALIDATION_FAILED = "STEP_VALIDATION_FAILED"


class RecoveryAction(str, Enum):
    """Named follow-ups a caller may offer after a failure."""

    RECHECK_CONNECTION = "recheck_connection"
    RETRY_WRITE = "retry_write"
    SKIP_STEP = "skip_step"
    WAIT_FOR_CONTENT = "wait_for_content"
    RESET_STATE = "reset_state"
    REINITIALIZE = "reinitialize"
    REVALIDATE_STEP = "revalidate_step"


NON_RECOVERABLE_CODES = frozenset({ErrorCode.USER_CANCELLED})

RETRYABLE_CODES = frozenset(
    {
        ErrorCode.NETWORK_ERROR,
        ErrorCode.PERSISTENCE_FAILURE,
        ErrorCode.ELEMENT_NOT_FOUND,
        ErrorCode.INITIALIZATION_FAILED,
        ErrorCode.STEP_VALIDATION_FAILED,
    }
)

FRIENDLY_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.NETWORK_ERROR: "Connection issue - we'll keep trying!",
    ErrorCode.PERSISTENCE_FAILURE: "Saving your progress - one moment...",
    ErrorCode.ACTION_TIMEOUT: "Taking your time? That's okay!",
    ErrorCode.ELEMENT_NOT_FOUND: "Looking for the right spot...",
    ErrorCode.INVALID_STATE: "Let's get back on track!",
    ErrorCode.USER_CANCELLED: "Tutorial paused - resume anytime!",
    ErrorCode.INITIALIZATION_FAILED: "Getting everything ready...",
    ErrorCode.STEP_VALIDATION_FAILED: "Checking your progress...",
}

DEFAULT_FRIENDLY_MESSAGE = "Something went wrong, but we'll figure it out!"


@dataclass
class TutorialError:
    """A structured failure record.

    Attributes:
        code: Taxonomy key.
        message: Developer-facing description.
        recoverable: Whether there is a sensible user-facing next step.
        retryable: Whether the operation is safe to re-attempt automatically.
        step: Step the failure relates to, if any.
        action: Action key the failure relates to, if any.
        timestamp: ISO timestamp of creation.
        metadata: Additional context.
    """

    code: ErrorCode
    message: str
    recoverable: bool
    retryable: bool
    step: str | None = None
    action: str | None = None
    timestamp: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "retryable": self.retryable,
            "step": self.step,
            "action": self.action,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


@dataclass
class RecoveryDecision:
    """What the caller should do about an error."""

    should_retry: bool
    should_recover: bool
    user_message: str
    recovery_action: RecoveryAction | None = None


def _enum_value(value: Any) -> str | None:
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)


class ErrorHandler:
    """Builds error records and recommends retry/recovery policy.

    Args:
        max_history: Number of records kept before the oldest rotate out.
    """

    def __init__(self, max_history: int = DEFAULT_HISTORY_SIZE) -> None:
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self._max_history = max_history
        self._history: list[TutorialError] = []

    def create_error(
        self,
        code: ErrorCode,
        message: str,
        step: Any = None,
        action: Any = None,
        recoverable: bool | None = None,
        retryable: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TutorialError:
        """Create an error record and append it to the history.

        Args:
            code: Error kind.
            message: Description of what failed.
            step: Related step id.
            action: Related action key.
            recoverable: Overrides the code's default recoverability.
            retryable: Overrides the code's default retryability.
            metadata: Additional context.

        Returns:
            The new TutorialError.
        """
        code = ErrorCode(code)
        error = TutorialError(
            code=code,
            message=message,
            recoverable=is_recoverable(code) if recoverable is None else recoverable,
            retryable=is_retryable(code) if retryable is None else retryable,
            step=_enum_value(step),
            action=_enum_value(action),
            timestamp=datetime.now(UTC).isoformat(),
            metadata=dict(metadata or {}),
        )
        self._record(error)
        return error

    def handle_error(self, error: TutorialError, retries_remaining: int = 0) -> RecoveryDecision:
        """Recommend how to proceed after ``error``.

        The decision depends only on the error's code and flags. For action
        timeouts the caller passes the retry budget it still holds, since
        this handler does not track budgets.

        Args:
            error: The failure to classify.
            retries_remaining: Upstream retry budget, used for timeouts.

        Returns:
            A RecoveryDecision.
        """
        code = error.code
        if code is ErrorCode.NETWORK_ERROR:
            return RecoveryDecision(
                should_retry=error.retryable,
                should_recover=error.recoverable,
                user_message="Network connection issue. We'll try again automatically.",
                recovery_action=RecoveryAction.RECHECK_CONNECTION,
            )
        if code is ErrorCode.PERSISTENCE_FAILURE:
            return RecoveryDecision(
                should_retry=error.retryable,
                should_recover=error.recoverable,
                user_message="Temporary server issue. Retrying...",
                recovery_action=RecoveryAction.RETRY_WRITE,
            )
        if code is ErrorCode.ACTION_TIMEOUT:
            return RecoveryDecision(
                should_retry=retries_remaining > 0,
                should_recover=error.recoverable,
                user_message="Taking too long? Let's try a different approach.",
                recovery_action=RecoveryAction.SKIP_STEP if error.recoverable else None,
            )
        if code is ErrorCode.ELEMENT_NOT_FOUND:
            return RecoveryDecision(
                should_retry=error.retryable,
                should_recover=error.recoverable,
                user_message="Looking for the right element. One moment...",
                recovery_action=RecoveryAction.WAIT_FOR_CONTENT,
            )
        if code is ErrorCode.INVALID_STATE:
            # Stale transitions are never retried automatically.
            return RecoveryDecision(
                should_retry=False,
                should_recover=error.recoverable,
                user_message="Let's get back on track. Resetting to a safe state.",
                recovery_action=RecoveryAction.RESET_STATE,
            )
        if code is ErrorCode.USER_CANCELLED:
            return RecoveryDecision(
                should_retry=False,
                should_recover=False,
                user_message="Tutorial cancelled. You can restart anytime!",
            )
        if code is ErrorCode.INITIALIZATION_FAILED:
            return RecoveryDecision(
                should_retry=error.retryable,
                should_recover=error.recoverable,
                user_message="Starting up the tutorial. Please wait...",
                recovery_action=RecoveryAction.REINITIALIZE,
            )
        if code is ErrorCode.STEP_VALIDATION_FAILED:
            return RecoveryDecision(
                should_retry=error.retryable,
                should_recover=error.recoverable,
                user_message="Validating your progress. Almost there!",
                recovery_action=RecoveryAction.REVALIDATE_STEP,
            )
        return RecoveryDecision(
            should_retry=error.retryable,
            should_recover=error.recoverable,
            user_message="Something went wrong. Let's try again.",
        )

    def get_user_friendly_message(self, error: TutorialError) -> str:
        """Short, non-technical message for an error."""
        return FRIENDLY_MESSAGES.get(error.code, DEFAULT_FRIENDLY_MESSAGE)

    def get_error_history(self) -> list[TutorialError]:
        """Return a copy of the recorded errors, oldest first."""
        return list(self._history)

    def clear_error_history(self) -> None:
        self._history = []

    def get_error_stats(self) -> dict[str, Any]:
        """Summarize the error history.

        Returns:
            Dictionary with ``total_errors``, ``errors_by_code``,
            ``recent_errors`` (last 10) and ``most_common_error`` (None when
            the history is empty).
        """
        counts = Counter(e.code.value for e in self._history)
        most_common = counts.most_common(1)
        return {
            "total_errors": len(self._history),
            "errors_by_code": dict(counts),
            "recent_errors": self._history[-RECENT_ERRORS:],
            "most_common_error": most_common[0][0] if most_common else None,
        }

    def _record(self, error: TutorialError) -> None:
        self._history.append(error)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history :]
        logger.warning(
            "Tutorial error %s: %s (step=%s, action=%s)",
            error.code.value,
            error.message,
            error.step,
            error.action,
        )


def is_recoverable(code: ErrorCode) -> bool:
    return code not in NON_RECOVERABLE_CODES


def is_retryable(code: ErrorCode) -> bool:
    return code in RETRYABLE_CODES
