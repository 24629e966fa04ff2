"""
Shipment records: creation and editing by the supplier, plus listing.

Marking a shipment shipped or delivered through the dedicated actions lives
in orders.services.lifecycle. The edit path here can also set DELIVERED; that
moves the order to DELIVERED and issues its invoice but does not receive stock.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from django.utils import timezone

from orders.models import Order, Shipment
from orders.services.authorization import AuthorizationGate, gate_for
from orders.services.errors import Forbidden, NotFound, PreconditionFailed, ValidationFailed
from orders.services.lifecycle import reflect_shipment_status
from orders.services.queries import scoped_orders, serialize_order, serialize_shipment
from orders.services.unit_of_work import UnitOfWork, notify

logger = logging.getLogger("scm.audit")

SHIPPABLE_ORDER_STATUSES = ("APPROVED", "PROCESSING", "CONFIRMED_BY_SUPPLIER")
_EDITABLE_FIELDS = ("carrier_name", "tracking_no")


def _normalize_status(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    normalized = str(status).strip().upper().replace(" ", "_")
    if normalized not in dict(Shipment.STATUS_CHOICES):
        raise ValidationFailed(f"Unknown shipment status {status!r}.", field="status")
    return normalized


def _deny_supplier_delivery(gate: AuthorizationGate, order: Order) -> None:
    if gate.owns_supplier(order.supplier_id) and not gate.owns_warehouse(order.warehouse_id):
        raise Forbidden("Only warehouse staff can mark shipments as Delivered.")


def _locked_pair(uow: UnitOfWork, shipment_id: int):
    order_id = (
        Shipment.objects.filter(shipment_id=shipment_id)
        .values_list("order_id", flat=True)
        .first()
    )
    if order_id is None:
        raise NotFound("Shipment not found.")
    order = uow.lock_order(order_id)
    shipment = uow.lock_shipment(shipment_id)
    return order, shipment


def _result(shipment: Shipment, order: Order) -> Dict[str, Any]:
    return {"shipment": serialize_shipment(shipment), "order": serialize_order(order)}


# ── Core Operations ─────────────────────────────────────────────────────────


def create_shipment(
    order_id: int,
    actor,
    carrier_name: Optional[str] = None,
    tracking_no: Optional[str] = None,
    status: Optional[str] = None,
) -> Dict[str, Any]:
    """Open a shipment for a supplier's order."""
    gate = gate_for(actor)
    status_code = _normalize_status(status) or "PENDING"

    with UnitOfWork() as uow:
        order = uow.lock_order(order_id)
        gate.require(gate.owns_supplier(order.supplier_id), "create shipments for this order")
        if status_code == "DELIVERED":
            _deny_supplier_delivery(gate, order)
        if order.status_code not in SHIPPABLE_ORDER_STATUSES:
            raise PreconditionFailed(
                "Shipments can only be created for approved, confirmed or processing orders."
            )

        shipment = Shipment.objects.create(
            order=order,
            status_code=status_code,
            carrier_name=(carrier_name or "").strip() or None,
            tracking_no=(tracking_no or "").strip() or None,
            shipped_at=timezone.now() if status_code == "IN_TRANSIT" else None,
            create_by_id=gate.actor_id,
            update_by_id=gate.actor_id,
        )
        reflect_shipment_status(uow, order, shipment, gate.actor_id)
        uow.on_commit(notify("shipment.created", shipment_id=shipment.shipment_id, order_id=order.order_id))

    logger.info(
        "shipment.created shipment_id=%s order_id=%s status=%s actor=%s",
        shipment.shipment_id,
        order.order_id,
        shipment.status_code,
        gate.actor_id,
    )
    return _result(shipment, order)


def update_shipment(
    shipment_id: int,
    actor,
    status: Optional[str] = None,
    expected_version: Optional[int] = None,
    **fields: Any,
) -> Dict[str, Any]:
    """Edit carrier/tracking details or the status of a shipment."""
    gate = gate_for(actor)
    unknown = set(fields) - set(_EDITABLE_FIELDS)
    if unknown:
        raise ValidationFailed(
            f"Unsupported shipment fields: {', '.join(sorted(unknown))}.", field="fields"
        )
    status_code = _normalize_status(status)

    with UnitOfWork() as uow:
        order, shipment = _locked_pair(uow, shipment_id)
        gate.require(
            gate.owns_supplier(order.supplier_id)
            or gate.owns_warehouse(order.warehouse_id),
            "edit this shipment",
        )
        uow.check_version(shipment, expected_version)

        changed: List[str] = []
        for name in _EDITABLE_FIELDS:
            if name in fields:
                setattr(shipment, name, (fields[name] or "").strip() or None)
                changed.append(name)

        status_changed = status_code is not None and status_code != shipment.status_code
        if status_changed:
            if shipment.status_code == "DELIVERED":
                raise PreconditionFailed("Delivered shipments cannot change status.")
            if status_code == "DELIVERED":
                _deny_supplier_delivery(gate, order)
            if status_code in ("IN_TRANSIT", "DELIVERED") and order.status_code in (
                "CANCELLED",
                "REJECTED",
            ):
                raise PreconditionFailed(f"Order #{order.order_id} is {order.status_code}.")

            shipment.status_code = status_code
            changed.append("status_code")
            if status_code == "IN_TRANSIT" and shipment.shipped_at is None:
                shipment.shipped_at = timezone.now()
                changed.append("shipped_at")
            if status_code == "DELIVERED" and shipment.delivered_at is None:
                shipment.delivered_at = timezone.now()
                changed.append("delivered_at")

        if changed:
            uow.save(shipment, changed, gate.actor_id)
        if status_changed:
            reflect_shipment_status(uow, order, shipment, gate.actor_id)

    logger.info(
        "shipment.updated shipment_id=%s status=%s fields=%s actor=%s",
        shipment.shipment_id,
        shipment.status_code,
        ",".join(changed),
        gate.actor_id,
    )
    return _result(shipment, order)


def _supplier_status_change(
    shipment_id: int, actor, target: str, allowed_from: tuple, action: str
) -> Dict[str, Any]:
    gate = gate_for(actor)
    with UnitOfWork() as uow:
        order, shipment = _locked_pair(uow, shipment_id)
        gate.require(gate.owns_supplier(order.supplier_id), action)
        if shipment.status_code not in allowed_from:
            raise PreconditionFailed(
                f"Cannot {action} in {shipment.status_code} status.",
                code="invalid_transition",
            )
        shipment.status_code = target
        uow.save(shipment, ["status_code"], gate.actor_id)

    logger.info(
        "shipment.%s shipment_id=%s order_id=%s actor=%s",
        target.lower(),
        shipment.shipment_id,
        order.order_id,
        gate.actor_id,
    )
    return _result(shipment, order)


def mark_shipment_delayed(shipment_id: int, actor) -> Dict[str, Any]:
    return _supplier_status_change(
        shipment_id, actor, "DELAYED", ("PENDING", "IN_TRANSIT"), "delay this shipment"
    )


def cancel_shipment(shipment_id: int, actor) -> Dict[str, Any]:
    return _supplier_status_change(
        shipment_id,
        actor,
        "CANCELLED",
        ("PENDING", "IN_TRANSIT", "DELAYED"),
        "cancel this shipment",
    )


# ── Read paths ──────────────────────────────────────────────────────────────


def list_shipments(actor) -> List[Dict[str, Any]]:
    gate = gate_for(actor)
    visible = scoped_orders(gate).values("order_id")
    qs = Shipment.objects.filter(order_id__in=visible).order_by("-create_dtime", "-shipment_id")
    return [serialize_shipment(shipment) for shipment in qs]


def get_shipment(shipment_id: int, actor) -> Dict[str, Any]:
    gate = gate_for(actor)
    visible = scoped_orders(gate).values("order_id")
    try:
        shipment = Shipment.objects.get(shipment_id=shipment_id, order_id__in=visible)
    except Shipment.DoesNotExist:
        raise NotFound("Shipment not found.")
    return serialize_shipment(shipment)
