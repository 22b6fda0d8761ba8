"""
Error taxonomy for the portal.

Every workflow failure is one of these. The API turns them into a JSON
``{"detail": message}`` body with the matching status code; callers in
other contexts show ``message`` to the user as a transient notification.
"""

from typing import List, Optional


class PortalError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PortalError):
    """A required field is missing or empty. Nothing was written."""
    status_code = 400
    default_message = "Please fill all fields"


class DuplicateUsernameError(PortalError):
    status_code = 409
    default_message = "Username already exists"


class InvalidCredentials(PortalError):
    status_code = 401
    default_message = "Invalid username or password"


class PasswordPolicyError(PortalError):
    status_code = 400
    default_message = "Password change not allowed"


class AuthorizationError(PortalError):
    status_code = 403
    default_message = "Forbidden for role"


class NotFoundError(PortalError):
    status_code = 404
    default_message = "Record not found"


class StoreOperationError(PortalError):
    """An underlying get/push/update/remove failed.

    ``completed`` lists the steps of a multi-step workflow that had already
    been written when the failure happened; they are not rolled back.
    """
    status_code = 502
    default_message = "Store operation failed"

    def __init__(self, message: Optional[str] = None, completed: Optional[List[str]] = None):
        super().__init__(message)
        self.completed = list(completed or [])
