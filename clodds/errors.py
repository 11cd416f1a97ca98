"""Exception taxonomy for the agent runtime.

Only AdmissionDenied, ModelUnavailable and the Subagent* errors cross
public boundaries as exceptions. ToolExecutionError and CompactionFailed
are caught at their boundaries and surfaced as data (an error ToolResult,
a CompactionResult with success=False).
"""

from __future__ import annotations

# Shown to the user whenever a turn fails in a way we cannot recover from.
GENERIC_FAILURE_MESSAGE = "Sorry, something went wrong while handling that. Please try again."


class CloddsError(Exception):
    """Base exception for all runtime errors."""


class AdmissionDenied(CloddsError):
    """Participant exceeded the rate limit."""

    def __init__(self, key: str, reset_in: float) -> None:
        self.key = key
        self.reset_in = reset_in
        super().__init__(f"Rate limit exceeded for {key}, resets in {reset_in:.1f}s")

    def user_message(self) -> str:
        wait = max(1, int(self.reset_in + 0.999))
        return f"You're sending messages too quickly. Please wait {wait}s and try again."


class ModelUnavailable(CloddsError):
    """Retryable model/transport failure (429, 5xx, 529, timeouts)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ModelRequestError(CloddsError):
    """Non-retryable model failure (bad request, auth)."""


class ToolExecutionError(CloddsError):
    """A capability handler failed. Converted into an error ToolResult."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"{tool_name}: {message}")


class CompactionFailed(CloddsError):
    """Summarization failed; the transcript is left untouched."""


class SubagentNotFound(CloddsError):
    """No run with that id is visible to the calling session."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Subagent run not found: {run_id}")


class SubagentAlreadyRunning(CloddsError):
    """resume() called on a run that is already executing."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Subagent run already running: {run_id}")


class ConfigReloadNoop(CloddsError):
    """reload_config() was given no effective changes."""
