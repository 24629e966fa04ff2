from __future__ import annotations

import logging
from typing import Iterable, Tuple

from api.authentication import Principal

logger = logging.getLogger(__name__)

ROLE_ADMIN = "ADMIN"
ROLE_WAREHOUSE_STAFF = "WAREHOUSE_STAFF"
ROLE_SUPPLIER = "SUPPLIER"

PERM_ORDER_VIEW = "orders.order.view"
PERM_ORDER_CREATE = "orders.order.create"
PERM_ORDER_EDIT_ITEMS = "orders.order.edit_items"
PERM_ORDER_SUBMIT = "orders.order.submit"
PERM_ORDER_APPROVE = "orders.order.approve"
PERM_ORDER_REJECT = "orders.order.reject"
PERM_ORDER_SEND = "orders.order.send"
PERM_ORDER_SUPPLIER_CONFIRM = "orders.order.supplier_confirm"
PERM_ORDER_PROCESS = "orders.order.process"
PERM_ORDER_SHIP = "orders.order.ship"
PERM_ORDER_CANCEL = "orders.order.cancel"
PERM_ORDER_PAY = "orders.order.pay"

PERM_SHIPMENT_MANAGE = "orders.shipment.manage"
PERM_SHIPMENT_DELIVER = "orders.shipment.deliver"
PERM_INVOICE_MANAGE = "orders.invoice.manage"
PERM_TASK_WORK = "orders.task.work"

_ROLE_PERMISSION_MAP = {
    ROLE_ADMIN: {
        PERM_ORDER_VIEW,
        PERM_ORDER_APPROVE,
        PERM_ORDER_REJECT,
        PERM_ORDER_SEND,
        PERM_ORDER_SHIP,
    },
    ROLE_WAREHOUSE_STAFF: {
        PERM_ORDER_VIEW,
        PERM_ORDER_CREATE,
        PERM_ORDER_EDIT_ITEMS,
        PERM_ORDER_SUBMIT,
        PERM_ORDER_PROCESS,
        PERM_ORDER_SHIP,
        PERM_ORDER_CANCEL,
        PERM_ORDER_PAY,
        PERM_SHIPMENT_DELIVER,
        PERM_TASK_WORK,
    },
    ROLE_SUPPLIER: {
        PERM_ORDER_VIEW,
        PERM_ORDER_SUPPLIER_CONFIRM,
        PERM_ORDER_CANCEL,
        PERM_SHIPMENT_MANAGE,
        PERM_INVOICE_MANAGE,
    },
}


def _dedupe_preserve_order(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def resolve_roles_and_permissions(
    request, principal: Principal
) -> Tuple[list[str], list[str]]:
    if hasattr(request, "_rbac_cache"):
        cached = request._rbac_cache
        return cached["roles"], cached["permissions"]

    roles = _dedupe_preserve_order(str(role).upper() for role in principal.roles or [])
    permissions = list(getattr(principal, "permissions", []) or [])
    if not permissions:
        permissions = sorted(_permissions_for_roles(roles))

    request._rbac_cache = {"roles": roles, "permissions": permissions}
    return roles, permissions


def _permissions_for_roles(roles: Iterable[str]) -> set[str]:
    permissions: set[str] = set()
    for role in roles:
        granted = _ROLE_PERMISSION_MAP.get(role.upper())
        if granted is None:
            logger.debug("No permissions mapped for role %s", role)
            continue
        permissions |= granted
    return permissions
