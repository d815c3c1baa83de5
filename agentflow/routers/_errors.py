from fastapi import HTTPException

from agentflow.core.errors import InvalidTransitionError, NotFoundError, StoryValidationError


def to_http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StoryValidationError):
        return HTTPException(status_code=400, detail={"message": str(exc), "errors": exc.errors})
    return HTTPException(status_code=400, detail=str(exc))
