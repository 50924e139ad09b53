from rest_framework import permissions

from .models import CustomUser


def has_role(user, *roles):
    """Return True if `user` is authenticated and holds one of `roles`."""
    return bool(
        user
        and user.is_authenticated
        and user.is_active
        and getattr(user, "role", None) in roles
    )


class IsPatient(permissions.BasePermission):
    """
    Allows access only to authenticated users with the PATIENT role.
    """

    message = "Only patients can perform this action."

    def has_permission(self, request, view):
        return has_role(request.user, CustomUser.Role.PATIENT)


class IsDoctor(permissions.BasePermission):
    """
    Allows access only to authenticated users with the DOCTOR role.
    """

    message = "Only doctors can perform this action."

    def has_permission(self, request, view):
        return has_role(request.user, CustomUser.Role.DOCTOR)


class IsAdminRole(permissions.BasePermission):
    """
    Allows access only to ADMIN users (superusers count as admins).
    """

    message = "Only administrators can perform this action."

    def has_permission(self, request, view):
        if request.user and request.user.is_authenticated and request.user.is_superuser:
            return True
        return has_role(request.user, CustomUser.Role.ADMIN)
