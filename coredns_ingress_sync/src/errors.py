from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from kubernetes.client import ApiException

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class SyncError(RuntimeError):
    """Base class for failures talking to the cluster or reading its documents.

    ``requeue_after`` is the delay (seconds) the event loop should wait before
    trying the cycle again; ``None`` means the configured default.
    """

    requeue_after: float | None = None


class NotFoundError(SyncError):
    """An expected resource does not exist."""


class ConflictError(SyncError):
    """A write lost an optimistic-concurrency race (HTTP 409)."""

    requeue_after = 5.0


class MalformedDocumentError(SyncError):
    """An externally owned document lacks a field or key we depend on."""


class RetriesExhaustedError(SyncError):
    """Every conflict retry was consumed without a successful write."""

    requeue_after = 10.0


class EnforcementError(SyncError):
    """One or more defensive enforcement steps failed.

    ``failures`` maps the step name (``directive`` / ``mount``) to its error.
    """

    def __init__(self, failures: dict[str, Exception]) -> None:
        self.failures = dict(failures)
        summary = ", ".join(f"{step}: {exc}" for step, exc in self.failures.items())
        super().__init__(f"server configuration enforcement failed ({summary})")


def translate_api_exception(exc: ApiException, action: str) -> SyncError:
    """Map a kubernetes ``ApiException`` onto the sync error taxonomy."""
    detail = f"{action}: {exc.status} {exc.reason}"
    if exc.status == 404:
        return NotFoundError(detail)
    if exc.status == 409:
        return ConflictError(detail)
    return SyncError(detail)


def retry_on_conflict(
    operation: Callable[[], T],
    *,
    description: str,
    attempts: int = 3,
    backoff_seconds: float = 0.1,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> T:
    """Run a read-compare-write closure, retrying only when it loses a version race.

    ``operation`` must re-read the resource on every call so each attempt
    compares against fresh state.  Anything other than :class:`ConflictError`
    propagates immediately.  When all attempts conflict,
    :class:`RetriesExhaustedError` is raised, chained to the last conflict.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_conflict: ConflictError | None = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConflictError as exc:
            last_conflict = exc
            LOGGER.info(
                "Conflict while %s (attempt %d/%d): %s",
                description,
                attempt,
                attempts,
                exc,
            )
            if attempt < attempts:
                sleep_fn(backoff_seconds)

    raise RetriesExhaustedError(
        f"{description} failed after {attempts} attempts"
    ) from last_conflict
