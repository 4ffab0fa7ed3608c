"""
Exception hierarchy for the gemstone analysis pipeline.

Every exception that is fatal to a single item derives from
GemstoneAnalysisError so the batch runner can record it and move on.
Parse failures are not exceptions; see response_parser.ParseFailure.
"""

from typing import List, Optional


class GemstoneAnalysisError(Exception):
    """Base class for all item-level pipeline failures."""

    stage = "unknown"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransientIOError(GemstoneAnalysisError):
    """An image could not be downloaded after exhausting all retries."""

    stage = "fetching"

    def __init__(self, message: str, url: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class ImageBatchMismatchError(GemstoneAnalysisError):
    """Fetched image count differs from the requested image count."""

    stage = "fetching"

    def __init__(self, expected: int, fetched: int):
        super().__init__(
            f"Image batch mismatch: fetched {fetched} of {expected} requested images"
        )
        self.expected = expected
        self.fetched = fetched


class InvocationError(GemstoneAnalysisError):
    """The vision model call failed or timed out. Never retried automatically."""

    stage = "invoking"

    def __init__(self, message: str, model_name: Optional[str] = None, timed_out: bool = False):
        super().__init__(message)
        self.model_name = model_name
        self.timed_out = timed_out


class CriticalValidationError(GemstoneAnalysisError):
    """Validation issues marked INCOMPLETE or INVALID; the item is not persisted."""

    stage = "validating"

    def __init__(self, issues: List[str]):
        super().__init__(f"Critical validation failure: {', '.join(issues)}")
        self.issues = list(issues)


class PersistenceError(GemstoneAnalysisError):
    """A persistence step failed. Carries the statement needed to fix it by hand."""

    stage = "persisting"

    def __init__(self, message: str, step: str, recovery: Optional[str] = None):
        super().__init__(message)
        self.step = step
        self.recovery = recovery
