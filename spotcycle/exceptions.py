"""Spotcycle exceptions."""

from __future__ import annotations

import logging


class SpotCycleError(Exception):
    """Base class for every fatal spotcycle error.

    Attributes:
        hint: Short, actionable advice printed by the CLI next to the error.
    """

    hint: str = ""

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint


class AuthError(SpotCycleError):
    """Credential missing, rejected or expired. Never retried."""

    hint = "regenerate token or set SPOT_CLIENT_ID/SPOT_CLIENT_SECRET"


class ApiError(SpotCycleError):
    """Non-2xx response from the control plane.

    Attributes:
        status: HTTP status code (0 when the request never got a response).
        message: Human message extracted from the error body.
    """

    def __init__(self, status: int, message: str, hint: str | None = None):
        super().__init__(f"API error {status}: {message}", hint or _hint_for(status))
        self.status = status
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.status == 429 or self.status >= 500 or self.status == 0


class RateLimitExceeded(ApiError):
    """HTTP 429 persisted after the bounded number of retries."""

    def __init__(self, message: str, attempts: int):
        super().__init__(429, f"{message} (gave up after {attempts} attempts)")
        self.attempts = attempts


class ValidationError(SpotCycleError):
    """Malformed CLI input or catalog data missing required fields."""

    hint = "check the supplied options and the catalog response"


class InvalidTransition(ValidationError):
    """Lifecycle operation requested from a state that does not allow it."""

    hint = "run `spotcycle status` to see the observed state"


class WaitTimeout(SpotCycleError, TimeoutError):
    """A bounded cluster-state wait exceeded its deadline.

    Nothing applied before the wait is rolled back; re-running the same
    operation picks up where it stopped.
    """

    hint = "re-run the same command once the cluster settles"


class CommandError(SpotCycleError):
    """An external tool (terraform, kubectl, helm) exited non-zero."""

    def __init__(self, command: list[str], returncode: int, output: str = ""):
        detail = output.strip().splitlines()[-1] if output.strip() else "no output"
        super().__init__(
            f"`{' '.join(command[:2])}` exited with code {returncode}: {detail}",
            hint=f"inspect the {command[0]} output above and re-run",
        )
        self.command = command
        self.returncode = returncode
        self.output = output


class ClusterUnreachable(SpotCycleError):
    """The Kubernetes API could not be reached with the current kubeconfig."""

    hint = "check KUBECONFIG_PATH or re-fetch the kubeconfig with `spotcycle deploy`"


class WorkloadStillRunning(SpotCycleError):
    """Workload pods are still Running after every node was drained."""

    hint = "inspect the pods with kubectl and re-run pause"

    def __init__(self, pods: list[str]):
        super().__init__(f"Pods still running: {', '.join(pods)}")
        self.pods = pods


class DegradedWarning(UserWarning):
    """Best-effort step failed; logged and absorbed, never raised."""


def _hint_for(status: int) -> str:
    if status == 401:
        return "regenerate token"
    if status in (403, 404):
        return "check organization scope (SPOT_ORG_NAMESPACE)"
    if status == 429:
        return "rate limited; wait and retry"
    if status >= 500 or status == 0:
        return "control plane unavailable; retry later"
    return "check the request parameters"


def degraded(logger: logging.Logger, message: str, exc: BaseException | None = None) -> None:
    """Log a best-effort failure as a :class:`DegradedWarning` and carry on."""
    if exc is not None:
        message = f"{message}: {exc}"
    logger.warning("%s: %s", DegradedWarning.__name__, message)
