"""Error taxonomy shared by the stores, the executor and the operator surface.

Every class carries a ``transient`` flag.  Transient errors are retried
internally with backoff and only surface once the retry budget is spent;
non-transient errors halt the affected resource but never the whole cycle.
"""

from __future__ import annotations

from kubesync.models.resources import ResourceKey


class KubeSyncError(Exception):
    """Base class for all controller errors."""

    transient: bool = False
    error_class: str = "internal"

    def __init__(self, message: str, key: ResourceKey | None = None) -> None:
        super().__init__(message)
        self.key = key


class SourceUnavailable(KubeSyncError):
    """The desired-state source could not be read (network, auth, decode)."""

    transient = True
    error_class = "source_unavailable"


class StoreUnavailable(KubeSyncError):
    """The live cluster API could not be reached or timed out."""

    transient = True
    error_class = "store_unavailable"


class RateLimited(KubeSyncError):
    """The live cluster API asked the caller to slow down."""

    transient = True
    error_class = "rate_limited"


class Conflict(KubeSyncError):
    """Optimistic-concurrency race: the live version moved under the writer."""

    transient = True
    error_class = "conflict"

    def __init__(
        self,
        message: str,
        key: ResourceKey | None = None,
        current_version: str | None = None,
    ) -> None:
        super().__init__(message, key)
        self.current_version = current_version


class ValidationRejected(KubeSyncError):
    """The platform rejected a write as malformed."""

    error_class = "validation_rejected"


class PermissionDenied(KubeSyncError):
    """The platform refused the write for authorization reasons."""

    error_class = "permission_denied"


class OwnershipViolation(KubeSyncError):
    """A live resource matching a desired key lacks the ownership marker."""

    error_class = "ownership_violation"


class HealthTimeout(KubeSyncError):
    """A resource did not become healthy within its grace window."""

    error_class = "health_timeout"


class NotFound(KubeSyncError):
    """Unknown resource, release or track on the operator surface."""

    error_class = "not_found"


class OperatorConflict(KubeSyncError):
    """An operator action collided with another in-flight action."""

    error_class = "operator_conflict"


class ComponentStopped(KubeSyncError):
    """An operator action reached a background component that is not running."""

    error_class = "component_stopped"


def is_transient(exc: BaseException) -> bool:
    """Return True if *exc* belongs to a retryable error class.

    Bare ``TimeoutError`` (raised by ``asyncio.timeout``) counts as transient.
    """
    if isinstance(exc, KubeSyncError):
        return exc.transient
    return isinstance(exc, TimeoutError)


def error_class_of(exc: BaseException) -> str:
    """Return the metric/status label for *exc*."""
    if isinstance(exc, KubeSyncError):
        return exc.error_class
    if isinstance(exc, TimeoutError):
        return "timeout"
    return "internal"
