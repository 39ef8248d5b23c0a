"""Exception types raised by the estimator."""
from __future__ import annotations

from typing import Sequence


class VRAMEstimatorError(Exception):
    """Base class for every error the estimator raises."""


class ConfigFetchError(VRAMEstimatorError):
    """Raised when a model document cannot be downloaded.

    Carries the *url* that failed and a *details* string (transport error or
    HTTP status). Fetches are never retried.
    """

    def __init__(self, url: str, details: str) -> None:
        self.url = url
        self.details = details
        super().__init__(f"Failed to fetch {url}: {details}")


class ConfigParseError(VRAMEstimatorError):
    """Raised when a downloaded document is not the JSON we expect."""

    def __init__(self, source: str, details: str) -> None:
        self.source = source
        self.details = details
        super().__init__(f"Malformed model document {source}: {details}")


class InvalidQuantisationError(VRAMEstimatorError):
    def __init__(self, token: str, suggestion: str | None = None) -> None:
        self.token = token
        self.suggestion = suggestion
        message = f"Invalid quantisation or BPW value: {token}"
        if suggestion:
            message += f". Did you mean {suggestion}?"
        super().__init__(message)


class SearchExhaustedError(VRAMEstimatorError):
    """Raised when no context length or quantisation fits the budget.

    *smallest* is the least demanding value that was tried (512 tokens, or
    the lowest-BPW catalogue entry) and *vram* its estimate in GB.
    """

    def __init__(self, kind: str, smallest: int | str, vram: float,
                 budget: float) -> None:
        self.kind = kind
        self.smallest = smallest
        self.vram = vram
        self.budget = budget
        super().__init__(
            f"No {kind} fits in {budget:.2f} GB; smallest tried was "
            f"{smallest} needing {vram:.2f} GB")


class InvariantViolation(VRAMEstimatorError):
    """Raised when a model shape cannot be fed to the memory model."""

    def __init__(self, model_id: str, fields: Sequence[str]) -> None:
        self.model_id = model_id
        self.fields = tuple(fields)
        super().__init__(
            f"Model shape for {model_id} is unusable: {', '.join(self.fields)}")
