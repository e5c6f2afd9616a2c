from rest_framework.permissions import BasePermission

from .models import UserRole


class IsAdminUserRole(BasePermission):
    """Allow only admin role or superuser."""

    def has_permission(self, request, view):
        user = request.user
        return bool(
            user
            and user.is_authenticated
            and user.is_active
            and (user.is_superuser or getattr(user, "role", None) == UserRole.ADMIN)
        )


class IsOperatorOrAdminRole(BasePermission):
    """Allow operator or admin (including superuser)."""

    def has_permission(self, request, view):
        user = request.user
        role = getattr(user, "role", None)
        return bool(
            user
            and user.is_authenticated
            and user.is_active
            and (user.is_superuser or role in (UserRole.OPERATOR, UserRole.ADMIN))
        )


class HasLocationAccess(BasePermission):
    """Object-level check against the object's ``location_id``."""

    message = "You can only access records for your assigned location"

    def has_object_permission(self, request, view, obj):
        location_id = getattr(obj, "location_id", None)
        return request.user.can_access_location(location_id)
