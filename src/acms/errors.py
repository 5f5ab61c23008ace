from typing import Any, Dict, Optional


class AppError(Exception):
    """Base exception for provider and flow errors."""

    def __init__(
        self,
        message: str,
        component: str = "unknown",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.component = component
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "component": self.component,
            "details": self.details,
        }


class AuthProviderError(AppError):
    """Failure reported by the auth service, message kept verbatim."""

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        super().__init__(message, component="auth", details=details)


class DatastoreError(AppError):
    def __init__(
        self,
        message: str,
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        super().__init__(message, component="datastore", details=details)


class MfaFlowError(AppError):
    """An MFA event that is not valid in the current state."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.status_code = 409
        super().__init__(message, component="mfa", details=details)
