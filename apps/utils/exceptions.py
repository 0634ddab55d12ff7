import logging

logger = logging.getLogger(__name__)


class BusinessLogicException(Exception):
    """
    Raised when a domain rule is violated (e.g. 'Stock not available').
    """
    code = "business_error"

    def __init__(self, message, code=None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)


class ValidationError(BusinessLogicException):
    """Bad input shape. Nothing was mutated."""
    code = "validation_error"


class NotFoundError(BusinessLogicException):
    code = "not_found"


class InsufficientStockError(BusinessLogicException):
    code = "insufficient_stock"


class InvalidTransitionError(BusinessLogicException):
    code = "invalid_transition"


class PersistenceError(BusinessLogicException):
    """
    A store operation failed. Single-row calls fail atomically,
    so the row in question was not written.
    """
    code = "persistence_error"


class CompensationError(BusinessLogicException):
    """
    A rollback step itself failed.
    Recorded next to the original cause, never instead of it.
    """
    code = "compensation_error"

    def __init__(self, message, step=None, cause=None):
        self.step = step
        self.cause = cause
        super().__init__(message)
