"""Error taxonomy for the AFMS core."""
from typing import Optional


class AfmsError(Exception):
    """Base exception for core failures that callers are expected to handle."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ConcurrencyConflict(AfmsError):
    """
    Raised when an event is written with an expected version that is not the current one.

    The caller must reload the current version and retry the command from scratch.
    """

    def __init__(self, aggregate_id: str, expected_version: int):
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        super().__init__(
            f"Concurrency conflict: Event version mismatch for aggregate {aggregate_id} "
            f"(expected version {expected_version})"
        )


class NoHandlerRegistered(AfmsError):
    """Raised when a command or query type has no registered handler."""

    def __init__(self, kind: str, message_type: str):
        self.kind = kind
        self.message_type = message_type
        super().__init__(f"No handler registered for {kind}: {message_type}")


class IdempotencyCollision(AfmsError):
    """
    Same idempotency key presented with different content.

    Treated as a possible replay; the request is rejected and never executed.
    """

    def __init__(self, idempotency_key: str, existing_hash: str, new_hash: str):
        self.idempotency_key = idempotency_key
        self.existing_hash = existing_hash
        self.new_hash = new_hash
        super().__init__("Idempotency key collision detected")


class ProjectionNotFound(AfmsError):
    def __init__(self, projection_name: str):
        self.projection_name = projection_name
        super().__init__(f"Projection not found: {projection_name}")


class RuleExecutionFailure(AfmsError):
    """Raised inside the rules engine for a single rule; captured in its result."""

    def __init__(self, rule_id: str, message: str, cause: Optional[BaseException] = None):
        self.rule_id = rule_id
        self.cause = cause
        super().__init__(message)
