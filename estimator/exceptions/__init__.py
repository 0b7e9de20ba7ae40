"""Custom exceptions for the estimator application."""

class EstimatorError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv

class ValidationError(EstimatorError):
    """Raised when a draft is rejected before submission starts."""
    def __init__(self, message, errors=None):
        super().__init__(message, 400, {'errors': errors or []})
        self.errors = errors or []

class NotFoundError(EstimatorError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)

class IdentifierCollisionError(EstimatorError):
    """Raised when every generated identifier for an insert already exists."""
    def __init__(self, prefix, attempts):
        message = f"Could not allocate a unique {prefix} identifier after {attempts} attempts"
        super().__init__(message, 409)
        self.prefix = prefix
        self.attempts = attempts

class SubmissionError(EstimatorError):
    """
    Fatal failure while persisting a draft.

    Rows written before the failing step are left in place; `created`
    lists the permanent ids that exist at the time of failure.
    """
    def __init__(self, step, message, created=None):
        self.step = step
        self.created = dict(created or {})
        super().__init__(message, 500, {'step': step, 'created': self.created})
