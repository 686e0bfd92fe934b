class SafetyError(Exception):
    """Base class for domain errors raised by the safety services."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(SafetyError):
    status_code = 404


class InvalidTransitionError(SafetyError):
    """A record was asked to move to a state its current state does not allow."""
    status_code = 409


class ValidationError(SafetyError):
    status_code = 422


class AuthorizationError(SafetyError):
    status_code = 403


class ConflictError(SafetyError):
    status_code = 409


class WindowExpiredError(SafetyError):
    """An appeal or dispute arrived after its submission window closed."""
    status_code = 422
