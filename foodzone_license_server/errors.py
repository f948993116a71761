from typing import Optional


class LicenseError(Exception):
    """Base for every error the license service reports to a caller."""

    status_code = 400

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class ValidationError(LicenseError):
    pass


class NotFoundError(LicenseError):
    pass


class ExpiredError(LicenseError):
    pass


class ConflictError(LicenseError):
    pass


class DuplicateKeyError(LicenseError):
    status_code = 409


class UnauthorizedError(LicenseError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class StoreError(LicenseError):
    status_code = 500
