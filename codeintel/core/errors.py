"""
Error taxonomy for AI request processing.

Every failure surfaced by the gateway, selector or orchestrator is one of a
closed set of codes. Each code carries a ``retryable`` flag that callers use
to decide whether a retry with backoff is worthwhile:

| Code                       | Retryable |
|----------------------------|-----------|
| INVALID_REQUEST            | no        |
| MODEL_UNAVAILABLE          | yes       |
| RATE_LIMIT_EXCEEDED        | yes       |
| QUALITY_THRESHOLD_NOT_MET  | yes       |
| PRIVACY_VIOLATION          | no        |
| NETWORK_ERROR              | yes       |
| TIMEOUT                    | yes       |
| AUTHENTICATION_FAILED      | no        |
| INSUFFICIENT_RESOURCES     | yes       |

The orchestrator never retries on its own; see ``codeintel.core.retry`` for the
caller-level policy built on these flags.
"""
import random
from enum import Enum
from typing import Any, Dict, Optional

DEFAULT_BASE_DELAY_MS = 1000.0
DEFAULT_MAX_DELAY_MS = 30000.0


class AIErrorCode(str, Enum):
    """Closed set of AI error codes."""
    INVALID_REQUEST = "INVALID_REQUEST"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    QUALITY_THRESHOLD_NOT_MET = "QUALITY_THRESHOLD_NOT_MET"
    PRIVACY_VIOLATION = "PRIVACY_VIOLATION"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    INSUFFICIENT_RESOURCES = "INSUFFICIENT_RESOURCES"


class AIError(Exception):
    """
    Base class for all AI processing errors.

    Subclasses pin ``code`` and the default ``retryable`` flag. A few call
    sites override ``retryable`` (e.g. a capability mismatch is reported as
    MODEL_UNAVAILABLE but retrying it can never help).
    """

    code: AIErrorCode = AIErrorCode.MODEL_UNAVAILABLE
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        request_id: Optional[str] = None,
        model_id: Optional[str] = None,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.model_id = model_id
        self.context = context or {}
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view used by API error responses and logs."""
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "request_id": self.request_id,
            "model_id": self.model_id,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value}, message={self.message!r})"


class InvalidRequestError(AIError):
    code = AIErrorCode.INVALID_REQUEST
    retryable = False


class ModelUnavailableError(AIError):
    code = AIErrorCode.MODEL_UNAVAILABLE
    retryable = True


class RateLimitExceededError(AIError):
    """Raised when a provider's per-minute window is full."""
    code = AIErrorCode.RATE_LIMIT_EXCEEDED
    retryable = True

    def __init__(self, message: str, *, retry_after_ms: Optional[float] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after_ms = retry_after_ms
        if retry_after_ms is not None:
            self.context.setdefault("retry_after_ms", retry_after_ms)


class QualityThresholdNotMetError(AIError):
    code = AIErrorCode.QUALITY_THRESHOLD_NOT_MET
    retryable = True


class PrivacyViolationError(AIError):
    code = AIErrorCode.PRIVACY_VIOLATION
    retryable = False


class NetworkError(AIError):
    code = AIErrorCode.NETWORK_ERROR
    retryable = True


class RequestTimeoutError(AIError):
    code = AIErrorCode.TIMEOUT
    retryable = True


class AuthenticationFailedError(AIError):
    code = AIErrorCode.AUTHENTICATION_FAILED
    retryable = False


class InsufficientResourcesError(AIError):
    """Raised by admission control when the concurrency cap is reached."""
    code = AIErrorCode.INSUFFICIENT_RESOURCES
    retryable = True


ERROR_CLASSES = {
    cls.code: cls
    for cls in (
        InvalidRequestError,
        ModelUnavailableError,
        RateLimitExceededError,
        QualityThresholdNotMetError,
        PrivacyViolationError,
        NetworkError,
        RequestTimeoutError,
        AuthenticationFailedError,
        InsufficientResourcesError,
    )
}


def create_ai_error(code: AIErrorCode, message: str, **kwargs: Any) -> AIError:
    """Build the AIError subclass matching ``code``."""
    return ERROR_CLASSES[code](message, **kwargs)


def is_retryable(error: BaseException) -> bool:
    """
    Whether a caller may retry after ``error``.

    Only AIErrors carry a retryable flag; anything else is treated as a bug
    and never retried.
    """
    return isinstance(error, AIError) and error.retryable


def compute_retry_delay(
    attempt: int,
    base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Exponential backoff with jitter.

    delay = min(max_delay, base * 2^(attempt-1) + uniform(0, 0.1 * base * 2^(attempt-1)))

    Args:
        attempt: 1-based attempt number
        base_delay_ms: Delay for the first retry in milliseconds
        max_delay_ms: Upper bound on the returned delay
        rng: Optional random source (tests pass a seeded one)

    Returns:
        Delay in milliseconds
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    rng = rng or random
    exponential = base_delay_ms * (2 ** (attempt - 1))
    jitter = rng.uniform(0, 0.1 * exponential)
    return min(max_delay_ms, exponential + jitter)
