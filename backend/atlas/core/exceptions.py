"""Domain exceptions raised by the grid services"""


class GridError(Exception):
    """Base class for grid errors"""


class NotFoundError(GridError, LookupError):
    """Unknown vertical, sheet, column, row, agent or request"""


class InvariantViolationError(GridError, ValueError):
    """A mutation would break a structural invariant (last sheet, last column)"""


class ProviderError(GridError):
    """An AI or search provider call failed"""


class HttpRequestError(GridError):
    """A configured HTTP request returned an error or could not be sent"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class OpenRegisterError(GridError):
    """The company registry API returned an error"""
