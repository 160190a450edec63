"""Exception types raised by the E2E harness.

Accessors raise NotFoundError for absent objects so callers can treat
absence as a positive outcome (deletion checks). Everything else that goes
wrong while talking to kubectl or lvs is either MalformedResponseError
(output could not be decoded) or ExternalCallFailed (the command itself
failed).
"""


class HarnessError(Exception):
    """Base class for all harness errors."""


class NotFoundError(HarnessError):
    """A cluster object or logical volume does not exist."""

    def __init__(self, kind: str, name: str, namespace: str | None = None, detail: str = ""):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        self.detail = detail
        where = f"{namespace}/{name}" if namespace else name
        message = f"{kind} {where} not found"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class MalformedResponseError(HarnessError):
    """Output from kubectl or lvs could not be decoded."""


class ExternalCallFailed(HarnessError):
    """An external command (kubectl, lvs) failed to run or exited non-zero."""

    def __init__(self, cmd: list[str], returncode: int | None, stderr: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or "no output"
        super().__init__(f"{' '.join(cmd)} failed (rc={returncode}): {detail}")


class TimeoutExceeded(HarnessError):
    """A condition did not converge within its time budget.

    The message carries the last error raised by the probe, which is what
    makes a timed out wait diagnosable.
    """

    def __init__(
        self,
        description: str,
        timeout: float,
        attempts: int,
        last_error: BaseException | None,
    ):
        self.description = description
        self.timeout = timeout
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Timed out after {timeout}s ({attempts} attempts) waiting for "
            f"{description}; last error: {last_error!r}"
        )


class PlacementError(HarnessError):
    """A logical volume does not match its placement expectation."""

    def __init__(self, volume: str, mismatches: list[str]):
        self.volume = volume
        self.mismatches = mismatches
        super().__init__(f"logical volume {volume}: " + "; ".join(mismatches))


class ConditionNotMet(HarnessError):
    """An observed object is not (yet) in the expected state."""


class VolumeStillPresent(HarnessError):
    """A logical volume expected to be gone still exists on the host."""


class UnexpectedBinding(HarnessError):
    """A claim that must stay unbound reached the Bound phase."""


class ConfigError(HarnessError):
    """Harness configuration is missing or invalid."""


class CleanupError(HarnessError):
    """Teardown could not talk to the cluster."""
