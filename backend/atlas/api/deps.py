"""Shared FastAPI dependencies"""
from fastapi import HTTPException

from atlas.core.exceptions import GridError, InvariantViolationError, NotFoundError


def http_error(e: Exception) -> HTTPException:
    """Map a domain error onto an HTTP error"""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvariantViolationError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, GridError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))
