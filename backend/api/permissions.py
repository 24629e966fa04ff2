from rest_framework.permissions import BasePermission

from api.rbac import resolve_roles_and_permissions


def _required_permission_for(request, view):
    required = getattr(view, "required_permission", None)
    if required is None:
        view_cls = getattr(view, "view_class", None) or getattr(view, "cls", None)
        if view_cls is not None:
            required = getattr(view_cls, "required_permission", None)
    if isinstance(required, dict):
        required = required.get(request.method) or required.get("*")
    return required


class OrderPermission(BasePermission):
    """Checks the view's ``required_permission`` against resolved RBAC permissions.

    ``required_permission`` may be a single permission, a list (any of), or a
    method-specific mapping such as ``{"GET": "...view", "POST": "...create"}``.
    Ownership of the warehouse or supplier is checked later by the service layer.
    """

    message = "Forbidden."

    def has_permission(self, request, view) -> bool:
        required = _required_permission_for(request, view)
        if not required:
            return False

        user = request.user
        if not getattr(user, "is_authenticated", False):
            return False

        _, permissions = resolve_roles_and_permissions(request, user)
        if isinstance(required, (list, set, tuple)):
            return any(perm in permissions for perm in required)
        return required in permissions
