"""
Role and ownership checks for order operations.

The gate wraps an authenticated Principal. Every check fails closed: a
principal with no warehouse or supplier scope owns nothing.
"""
from __future__ import annotations

import logging
from typing import Optional

from api.authentication import Principal
from api.rbac import ROLE_ADMIN, ROLE_SUPPLIER, ROLE_WAREHOUSE_STAFF
from orders.services.errors import Forbidden

logger = logging.getLogger("scm.audit")


class AuthorizationGate:
    def __init__(self, principal: Principal):
        self.principal = principal
        self._roles = {str(role).upper() for role in (principal.roles or [])}

    @property
    def actor_id(self) -> str:
        return str(self.principal.user_id or self.principal.username or "")

    def has_role(self, role: str) -> bool:
        return role.upper() in self._roles

    def owns_warehouse(self, warehouse_id: Optional[int]) -> bool:
        return (
            self.has_role(ROLE_WAREHOUSE_STAFF)
            and warehouse_id is not None
            and self.principal.warehouse_id is not None
            and int(self.principal.warehouse_id) == int(warehouse_id)
        )

    def owns_supplier(self, supplier_id: Optional[int]) -> bool:
        return (
            self.has_role(ROLE_SUPPLIER)
            and supplier_id is not None
            and self.principal.supplier_id is not None
            and int(self.principal.supplier_id) == int(supplier_id)
        )

    @property
    def is_admin(self) -> bool:
        return self.has_role(ROLE_ADMIN)

    def require(self, allowed: bool, action: str) -> None:
        if not allowed:
            logger.warning(
                "authz.denied action=%s actor=%s roles=%s",
                action,
                self.actor_id,
                sorted(self._roles),
            )
            raise Forbidden(f"Not allowed to {action}.")


def gate_for(actor) -> AuthorizationGate:
    if isinstance(actor, AuthorizationGate):
        return actor
    if not getattr(actor, "is_authenticated", False):
        raise Forbidden("Authentication required.")
    return AuthorizationGate(actor)
