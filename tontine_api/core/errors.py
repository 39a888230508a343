"""
Application error taxonomy.

Services and dependencies raise these; the exception handlers in
``tontine_api.main`` are the only place they become HTTP responses, using
the envelope ``{"error": str, "code": str, "details": ...}``.
"""
from typing import Any, Dict, Optional

from fastapi import status


class AppError(Exception):
    """Base class for errors that map to a client-facing response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_SERVER_ERROR"
    message: str = "Unexpected server error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


# ============================================================================
# 400 - Input validation
# ============================================================================

class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    message = "Invalid request data"


class MissingAssociationId(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "MISSING_ASSOCIATION_ID"
    message = "Association ID is required"


class InvalidAssociationId(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_ASSOCIATION_ID"
    message = "Invalid association ID"


class InvalidPermission(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_PERMISSION"
    message = "Unknown permission for this association"


# ============================================================================
# 401 - Authentication
# ============================================================================

class NotAuthenticated(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "NOT_AUTHENTICATED"
    message = "Authentication required"


# ============================================================================
# 403 - Authorization
# ============================================================================

class NotAssociationMember(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "NOT_ASSOCIATION_MEMBER"
    message = "You are not an active member of this association"


# Kept for the public error taxonomy; the FastAPI guards resolve a membership
# through require_membership before any permission check, so none raises it.
class MembershipRequired(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "MEMBERSHIP_REQUIRED"
    message = "Membership must be resolved before checking permissions"


class AdminOnly(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ADMIN_ONLY"
    message = "Only the association administrator can perform this action"


class AccessDenied(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ACCESS_DENIED"
    message = "Access denied"


class InsufficientPermissions(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "INSUFFICIENT_PERMISSIONS"
    message = "Insufficient permissions for this action"


class PermissionRevoked(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "PERMISSION_REVOKED"
    message = "This permission has been revoked for you"


class NotCurrentAdmin(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "NOT_CURRENT_ADMIN"
    message = "Only the current administrator can transfer the admin status"


class RoleCannotBeRenamed(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ROLE_CANNOT_BE_RENAMED"
    message = "This role cannot be renamed"


class RoleCannotBeDeleted(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ROLE_CANNOT_BE_DELETED"
    message = "This role cannot be deleted"


# ============================================================================
# 404 - Not found
# ============================================================================

class AssociationNotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "ASSOCIATION_NOT_FOUND"
    message = "Association not found"


class MemberNotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "MEMBER_NOT_FOUND"
    message = "Member not found"


class RoleNotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "ROLE_NOT_FOUND"
    message = "Role not found"


class TargetNotActiveMember(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "TARGET_NOT_ACTIVE_MEMBER"
    message = "The new administrator must be an active member of the association"


# ============================================================================
# 409 - Conflict
# ============================================================================

class DuplicateRoleName(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "DUPLICATE_ROLE_NAME"
    message = "A role with this name already exists"


class DuplicatePermission(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "DUPLICATE_PERMISSION"
    message = "A permission with this identifier already exists"


class RoleInUse(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "ROLE_IN_USE"
    message = "This role is still assigned to members"


class UniqueRoleViolation(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "UNIQUE_ROLE_VIOLATION"
    message = "This role is unique and already held by another member"


class AlreadyMember(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "ALREADY_MEMBER"
    message = "You already have a membership in this association"
