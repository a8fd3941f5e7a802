"""
Exceptions raised by the access-control components.

Each carries the HTTP status it maps to; the API layer turns them into a
``{"error": ..., "success": false}`` envelope.
"""


class AccessControlError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AccessControlError):
    status_code = 400


class DeviceOfflineError(AccessControlError):
    status_code = 400

    def __init__(self, message: str = "Device is offline"):
        super().__init__(message)


class NoSyncDevicesError(AccessControlError):
    status_code = 400

    def __init__(self, message: str = "No face recognition devices found"):
        super().__init__(message)


class NotAuthenticatedError(AccessControlError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class PermissionDeniedError(AccessControlError):
    status_code = 403

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message)


class NotFoundError(AccessControlError):
    status_code = 404


class ConflictError(AccessControlError):
    status_code = 409


class ServiceUnavailableError(AccessControlError):
    status_code = 500
