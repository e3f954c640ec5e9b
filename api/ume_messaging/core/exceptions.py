"""
Custom exception hierarchy for the UME messaging API.

Every error raised by the messaging core carries a machine-readable
``error_code`` so that HTTP handlers and the action layer can surface it
without inspecting messages.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class BaseAppException(HTTPException):
    """Base exception for all application errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        headers: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code or self.__class__.__name__


# Authentication Exceptions


class UnauthenticatedError(BaseAppException):
    """Raised when the caller has no identity."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            detail,
            status.HTTP_401_UNAUTHORIZED,
            headers={"WWW-Authenticate": "Bearer"},
            error_code="UNAUTHENTICATED",
        )


class ForbiddenError(BaseAppException):
    """Raised when the caller lacks rights over the target resource."""

    def __init__(self, detail: str = "You are not allowed to perform this action"):
        super().__init__(detail, status.HTTP_403_FORBIDDEN, error_code="FORBIDDEN")


# Resource Exceptions


class ResourceNotFoundError(BaseAppException):
    """Raised when a resource is not found."""

    def __init__(self, resource_type: str, resource_id: str):
        detail = f"{resource_type} with ID '{resource_id}' not found"
        super().__init__(
            detail, status.HTTP_404_NOT_FOUND, error_code="RESOURCE_NOT_FOUND"
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class MessageNotFoundError(ResourceNotFoundError):
    def __init__(self, message_id: str):
        super().__init__("Message", message_id)


class ConversationNotFoundError(ResourceNotFoundError):
    def __init__(self, conversation_key: str):
        super().__init__("Conversation", conversation_key)


class NotificationNotFoundError(ResourceNotFoundError):
    def __init__(self, notification_id: str):
        super().__init__("Notification", notification_id)


# Data Validation Exceptions


class ValidationError(BaseAppException):
    """Raised when input validation fails."""

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(
            detail, status.HTTP_422_UNPROCESSABLE_ENTITY, error_code="VALIDATION_ERROR"
        )
        self.field = field


# Transport Exceptions


class TransportError(BaseAppException):
    """Raised when storage or an outbound transport fails."""

    def __init__(self, detail: str, operation: str):
        super().__init__(
            f"{operation} failed: {detail}",
            status.HTTP_502_BAD_GATEWAY,
            error_code="TRANSPORT_ERROR",
        )
        self.operation = operation
