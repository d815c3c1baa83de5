from typing import Any, Optional


class EngineError(ValueError):
    """Base class for errors the engine raises to its callers."""


class NotFoundError(EngineError):
    pass


class InvalidTransitionError(EngineError):
    pass


class StoryValidationError(EngineError):
    """STORIES_JSON payload rejected before any story row is written."""

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []
