"""
errors.py

Exception taxonomy shared by the collector, the risk scorer and the rule engine.

Error classes map onto how failures are handled:
- retryable / skippable / fatal remote failures (see collector.backoff)
- partial failures of one unit of concurrent work (collector, resource group, rule)
- cancellation of the run context
- storage write failures

Every error raised at a fan-out point carries the identity of its source
(collector name, resource group, rule name) in its message.
"""

from __future__ import annotations

from collections.abc import Iterable


class ModronError(Exception):
    """Base class for all errors raised by this package."""


# -----------------------------
# Remote calls
# -----------------------------


class RemoteCallError(ModronError):
    """Error returned by a cloud provider API, carrying its status code."""

    def __init__(self, message: str, *, code: int = 0) -> None:
        super().__init__(message)
        self.code = int(code)

    def __str__(self) -> str:
        base = super().__str__()
        if self.code:
            return f"{base} (code={self.code})"
        return base


class BackoffError(ModronError):
    """A wrapped remote call gave up; `last_error` holds the final underlying error."""

    def __init__(self, message: str, *, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class NotRetryableError(BackoffError):
    """The remote call failed with a code that is neither retryable nor skippable."""


class BackoffTooLongError(BackoffError):
    """Cumulative time spent retrying exceeded the configured budget."""

    def __init__(self, *, elapsed: float, last_error: BaseException | None) -> None:
        super().__init__(
            f"ExponentialBackoffRun.tooLong: after {elapsed:.1f} seconds: {last_error}",
            last_error=last_error,
        )
        self.elapsed = elapsed


class BackoffMaxAttemptError(BackoffError):
    """The remote call was attempted the maximum number of times."""

    def __init__(self, *, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(
            f"ExponentialBackoffRun.maxAttempt: after {attempts} attempts: {last_error}",
            last_error=last_error,
        )
        self.attempts = attempts


# -----------------------------
# Cancellation
# -----------------------------


class ContextCancelledError(ModronError):
    """The run context was cancelled before the unit of work completed."""


# -----------------------------
# Fan-out units
# -----------------------------


class CollectorError(ModronError):
    """A typed collector failed for one resource group."""

    def __init__(self, *, collector: str, resource_group: str, cause: BaseException) -> None:
        super().__init__(f"collector {collector} failed for {resource_group}: {cause}")
        self.collector = collector
        self.resource_group = resource_group
        self.cause = cause


class ResourceGroupError(ModronError):
    """Collection of one resource group failed (possibly partially)."""

    def __init__(self, *, resource_group: str, cause: BaseException) -> None:
        super().__init__(f"collection of {resource_group} failed: {cause}")
        self.resource_group = resource_group
        self.cause = cause


class RuleNotFoundError(ModronError, KeyError):
    """No rule is registered under the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"could not find rule {name!r}")
        self.name = name

    def __str__(self) -> str:
        return str(self.args[0])


class ResourceTypeNotAcceptedError(ModronError, ValueError):
    """A rule was invoked on a resource kind it does not declare."""

    def __init__(self, *, rule: str, kind: str) -> None:
        super().__init__(f"resource type {kind!r} is not accepted by rule {rule}")
        self.rule = rule
        self.kind = kind


class RuleExecutionError(ModronError):
    """Wraps any error reported by a rule with the rule identity."""

    def __init__(self, *, rule: str, cause: BaseException) -> None:
        super().__init__(f"execution of rule {rule} failed: {cause}")
        self.rule = rule
        self.cause = cause


# -----------------------------
# Storage
# -----------------------------


class StorageError(ModronError):
    """A storage backend rejected a read or a write."""


# -----------------------------
# Aggregation
# -----------------------------


class JoinedError(ModronError):
    """Several independent failures reported as one error."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors: list[BaseException] = list(errors)
        super().__init__("\n".join(str(e) for e in self.errors))


def join_errors(errors: Iterable[BaseException | None]) -> JoinedError | None:
    """Join non-null errors; return None when there is nothing to report."""
    kept = [e for e in errors if e is not None]
    if not kept:
        return None
    return JoinedError(kept)
