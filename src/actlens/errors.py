from __future__ import annotations


class ActLensError(Exception):
    """Base exception for all actlens errors."""


class UnrecoverableError(ActLensError):
    """Raised when collected statistics can no longer be trusted.

    The CLI aborts the run on these; library code never catches them.
    """


class InconsistentShapeError(UnrecoverableError):
    """Raised when an observation disagrees with the established entry size."""

    def __init__(self, key: str, expected: int, actual: int) -> None:
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Inconsistent size for {key} ({expected} vs {actual})"
        )


class ExpertIndexError(UnrecoverableError):
    """Raised when a routed row selects an expert outside the valid range."""

    def __init__(self, key: str, expert_id: int, expert_count: int) -> None:
        self.key = key
        self.expert_id = expert_id
        self.expert_count = expert_count
        super().__init__(
            f"Expert id {expert_id} out of range [0, {expert_count}) for {key}"
        )


class NonFiniteActivationError(UnrecoverableError):
    """Raised when an accumulated sum of squares stops being finite."""

    def __init__(self, key: str, value: float) -> None:
        self.key = key
        self.value = value
        super().__init__(f"{value} detected in {key}")


class SnapshotFormatError(UnrecoverableError):
    """Raised when a snapshot stream is truncated or malformed mid-merge."""


class InsufficientTokensError(UnrecoverableError):
    """Raised when the corpus is too short for the requested evaluation."""

    def __init__(self, message: str, token_count: int, required: int) -> None:
        self.token_count = token_count
        self.required = required
        super().__init__(message)
