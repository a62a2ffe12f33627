"""
Error taxonomy for the sync client.

- TransportError: network or channel failure. Push channels retry it with
  backoff, one-shot pull calls surface it to the caller.
- DecodeError: a payload that cannot be parsed into the expected shape.
  Dropped for push frames, surfaced for pull responses.
- ExhaustedRetries: a channel spent its reconnect budget. Terminal.
- CommandError: a state-changing call failed. Optimistic local state stays
  as applied until a snapshot or event reconciles it.
"""
from typing import Any


class SyncError(Exception):
    """Base error carrying a message, debugging context and an optional cause."""

    def __init__(self, message: str, cause: BaseException | None = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = context

    def __str__(self) -> str:
        ctx = f" {self.context}" if self.context else ""
        cause = f" (caused by: {self.cause})" if self.cause else ""
        return f"{self.message}{ctx}{cause}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
        }


class TransportError(SyncError):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: BaseException | None = None,
        **context: Any,
    ):
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, cause=cause, **context)
        self.status_code = status_code


class DecodeError(SyncError):
    pass


class ExhaustedRetries(SyncError):
    def __init__(self, channel: str, attempts: int):
        super().__init__(
            f"Connection failed after {attempts} attempts. Server may be unavailable.",
            channel=channel,
            attempts=attempts,
        )
        self.channel = channel
        self.attempts = attempts


class CommandError(SyncError):
    def __init__(self, command: str, entity_id: str | None, cause: BaseException):
        target = f" {entity_id}" if entity_id else ""
        super().__init__(f"{command}{target} failed", cause=cause, command=command)
        self.command = command
        self.entity_id = entity_id
