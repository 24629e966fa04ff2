"""
Order lifecycle: the order state machine and the shipment-level delivery steps.

Happy path:
    DRAFT → PENDING_APPROVAL → APPROVED → SENT_TO_SUPPLIER
          → CONFIRMED_BY_SUPPLIER → PROCESSING → SHIPPED → DELIVERED
with APPROVED → PROCESSING as the warehouse's shortcut, and REJECTED /
CANCELLED as terminal side branches. PENDING exists only on legacy rows.

Each transition is a row in ORDER_TRANSITIONS (or SHIPMENT_TRANSITIONS):
who may run it, which states it starts from, where it ends, and what it does
on the way. Dispatch is keyed by (current state, transition name); a missing
key is a PreconditionFailed. Every transition runs in one UnitOfWork, so the
status write, counter mutations, log rows, tasks and invoice commit or roll
back together.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from django.utils import timezone

from orders.models import Order, Shipment
from orders.services import invoicing, stock_ledger, tasks
from orders.services.authorization import AuthorizationGate, gate_for
from orders.services.errors import NotFound, PreconditionFailed, ValidationFailed
from orders.services.queries import serialize_order, serialize_shipment
from orders.services.unit_of_work import UnitOfWork, notify

logger = logging.getLogger("scm.audit")

NON_TERMINAL_STATUSES = frozenset(
    {
        "DRAFT",
        "PENDING",
        "PENDING_APPROVAL",
        "APPROVED",
        "SENT_TO_SUPPLIER",
        "CONFIRMED_BY_SUPPLIER",
        "PROCESSING",
        "SHIPPED",
    }
)


@dataclass(frozen=True)
class Transition:
    name: str
    action: str
    sources: FrozenSet[str]
    target: Optional[str]
    authorize: Callable[[AuthorizationGate, Order], bool]
    apply: Callable[..., List[str]]


@dataclass(frozen=True)
class ShipmentTransition:
    name: str
    action: str
    sources: FrozenSet[str]
    done_status: str
    authorize: Callable[[AuthorizationGate, Order], bool]
    apply: Callable[..., List[str]]


# ── Authorization rules ─────────────────────────────────────────────────────


def _admin(gate: AuthorizationGate, order: Order) -> bool:
    return gate.is_admin


def _warehouse_owner(gate: AuthorizationGate, order: Order) -> bool:
    return gate.owns_warehouse(order.warehouse_id)


def _supplier_owner(gate: AuthorizationGate, order: Order) -> bool:
    return gate.owns_supplier(order.supplier_id)


def _admin_or_warehouse_owner(gate: AuthorizationGate, order: Order) -> bool:
    return gate.is_admin or gate.owns_warehouse(order.warehouse_id)


def _cancel_allowed(gate: AuthorizationGate, order: Order) -> bool:
    if gate.owns_supplier(order.supplier_id):
        return True
    # Terminal orders fall through to the precondition check.
    return gate.owns_warehouse(order.warehouse_id) and (
        order.status_code in ("DRAFT", "PENDING_APPROVAL") or order.is_terminal
    )


# ── Helpers ─────────────────────────────────────────────────────────────────


def _append_note(order: Order, line: str) -> None:
    existing = order.notes_text or ""
    order.notes_text = f"{existing}\n{line}".strip()


def _ordered_items(order: Order):
    return list(order.items.select_related("product").order_by("order_item_id"))


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationFailed("Amount must be a number.", field="amount")
    if not amount.is_finite() or amount < 0:
        raise ValidationFailed("Amount must be a non-negative number.", field="amount")
    return amount


# ── Order transition effects ────────────────────────────────────────────────


def _submit(uow: UnitOfWork, order: Order, gate: AuthorizationGate, params: Dict[str, Any]) -> List[str]:
    if not order.items.exists():
        raise ValidationFailed("Cannot submit an order with no items.", code="no_items", field="items")
    return []


def _approve(uow, order, gate, params) -> List[str]:
    order.approved_at = timezone.now()
    order.approved_by = gate.actor_id
    notes = (params.get("notes") or "").strip()
    if notes:
        _append_note(order, f"[Approval] {notes}")
    return ["approved_at", "approved_by", "notes_text"]


def _reject(uow, order, gate, params) -> List[str]:
    reason = (params.get("reason") or "").strip()
    if not reason:
        raise ValidationFailed("Rejection reason is required.", code="reason_required", field="reason")
    _append_note(order, f"[Rejected] {reason}")
    return ["notes_text"]


def _no_effect(uow, order, gate, params) -> List[str]:
    return []


def _supplier_confirm(uow, order, gate, params) -> List[str]:
    for item in _ordered_items(order):
        stock_ledger.reserve_supplier_stock(uow, item.product_id, item.quantity)
    return []


def _ship(uow, order, gate, params) -> List[str]:
    for item in _ordered_items(order):
        stock_ledger.release_warehouse_stock(
            uow, order.warehouse_id, item.product_id, item.quantity
        )
        stock_ledger.record_transaction(
            uow,
            warehouse_id=order.warehouse_id,
            product_id=item.product_id,
            quantity=-item.quantity,
            txn_type="ISSUE",
            actor_id=gate.actor_id,
            reference_type="ORDER",
            reference_id=order.order_id,
            notes=f"Order #{order.order_id} shipped",
        )

    now = timezone.now()
    tracking_no = (params.get("tracking_no") or "").strip() or order.tracking_no
    order.shipped_at = now
    order.tracking_no = tracking_no
    Shipment.objects.create(
        order=order,
        status_code="IN_TRANSIT",
        carrier_name=(params.get("carrier_name") or "").strip() or None,
        tracking_no=tracking_no,
        shipped_at=now,
        create_by_id=gate.actor_id,
        update_by_id=gate.actor_id,
    )
    return ["shipped_at", "tracking_no"]


def _cancel(uow, order, gate, params) -> List[str]:
    reason = (params.get("reason") or "").strip()
    if reason:
        _append_note(order, f"[Cancelled] {reason}")
    return ["notes_text"]


def _payment_note(uow, order, gate, params) -> List[str]:
    method = (params.get("method") or "").strip() or "Unknown"
    amount = _parse_amount(params.get("amount"))
    if amount is None:
        amount = invoicing.compute_order_total(order)
    stamp = timezone.now().strftime("%Y-%m-%d %H:%M:%SZ")
    _append_note(order, f"[PAID {stamp}] Method={method}; Amount={amount}")
    return ["notes_text"]


ORDER_TRANSITIONS: Dict[str, Transition] = {
    t.name: t
    for t in (
        Transition("submit", "submit this order", frozenset({"DRAFT"}), "PENDING_APPROVAL", _warehouse_owner, _submit),
        Transition("approve", "approve orders", frozenset({"PENDING_APPROVAL"}), "APPROVED", _admin, _approve),
        Transition("reject", "reject orders", frozenset({"PENDING_APPROVAL"}), "REJECTED", _admin, _reject),
        Transition("send_to_supplier", "send orders to suppliers", frozenset({"APPROVED"}), "SENT_TO_SUPPLIER", _admin, _no_effect),
        Transition("supplier_confirm", "confirm this order", frozenset({"SENT_TO_SUPPLIER"}), "CONFIRMED_BY_SUPPLIER", _supplier_owner, _supplier_confirm),
        Transition("supplier_start_processing", "start processing this order", frozenset({"CONFIRMED_BY_SUPPLIER"}), "PROCESSING", _supplier_owner, _no_effect),
        Transition("process", "process this order", frozenset({"APPROVED"}), "PROCESSING", _warehouse_owner, _no_effect),
        Transition("ship", "ship this order", frozenset({"PROCESSING"}), "SHIPPED", _admin_or_warehouse_owner, _ship),
        Transition("cancel", "cancel this order", NON_TERMINAL_STATUSES, "CANCELLED", _cancel_allowed, _cancel),
        Transition("pay", "record a payment on this order", NON_TERMINAL_STATUSES, None, _warehouse_owner, _payment_note),
    )
}

_ORDER_DISPATCH: Dict[tuple, Transition] = {
    (source, t.name): t for t in ORDER_TRANSITIONS.values() for source in t.sources
}


def _run_order_transition(
    name: str,
    order_id: int,
    actor,
    expected_version: Optional[int] = None,
    **params: Any,
) -> Dict[str, Any]:
    declared = ORDER_TRANSITIONS[name]
    gate = gate_for(actor)

    with UnitOfWork() as uow:
        order = uow.lock_order(order_id)
        gate.require(declared.authorize(gate, order), declared.action)
        uow.check_version(order, expected_version)

        transition = _ORDER_DISPATCH.get((order.status_code, name))
        if transition is None:
            raise PreconditionFailed(
                f"Cannot {name.replace('_', ' ')} an order in {order.status_code} status.",
                code="invalid_transition",
            )

        previous = order.status_code
        fields = transition.apply(uow, order, gate, params)
        if transition.target is not None:
            order.status_code = transition.target
            fields = ["status_code", *fields]
        uow.save(order, fields, gate.actor_id)
        uow.on_commit(
            notify(f"order.{name}", order_id=order.order_id, status=order.status_code)
        )

    logger.info(
        "order.%s order_id=%s from=%s to=%s actor=%s",
        name,
        order.order_id,
        previous,
        order.status_code,
        gate.actor_id,
    )
    return serialize_order(order)


# ── Core Operations ─────────────────────────────────────────────────────────


def submit_order(order_id: int, actor, expected_version: Optional[int] = None) -> Dict[str, Any]:
    """DRAFT → PENDING_APPROVAL. The order needs at least one item."""
    return _run_order_transition("submit", order_id, actor, expected_version)


def approve_order(
    order_id: int, actor, notes: str = "", expected_version: Optional[int] = None
) -> Dict[str, Any]:
    """PENDING_APPROVAL → APPROVED."""
    return _run_order_transition("approve", order_id, actor, expected_version, notes=notes)


def reject_order(
    order_id: int, actor, reason: str, expected_version: Optional[int] = None
) -> Dict[str, Any]:
    """PENDING_APPROVAL → REJECTED."""
    return _run_order_transition("reject", order_id, actor, expected_version, reason=reason)


def send_to_supplier(order_id: int, actor, expected_version: Optional[int] = None) -> Dict[str, Any]:
    """APPROVED → SENT_TO_SUPPLIER."""
    return _run_order_transition("send_to_supplier", order_id, actor, expected_version)


def supplier_confirm(order_id: int, actor, expected_version: Optional[int] = None) -> Dict[str, Any]:
    """SENT_TO_SUPPLIER → CONFIRMED_BY_SUPPLIER, consuming supplier stock for every line."""
    return _run_order_transition("supplier_confirm", order_id, actor, expected_version)


def supplier_start_processing(
    order_id: int, actor, expected_version: Optional[int] = None
) -> Dict[str, Any]:
    """CONFIRMED_BY_SUPPLIER → PROCESSING."""
    return _run_order_transition("supplier_start_processing", order_id, actor, expected_version)


def process_order(order_id: int, actor, expected_version: Optional[int] = None) -> Dict[str, Any]:
    """APPROVED → PROCESSING without supplier confirmation."""
    return _run_order_transition("process", order_id, actor, expected_version)


def ship_order(
    order_id: int,
    actor,
    tracking_no: Optional[str] = None,
    carrier_name: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """PROCESSING → SHIPPED, drawing every line from warehouse on-hand stock."""
    return _run_order_transition(
        "ship",
        order_id,
        actor,
        expected_version,
        tracking_no=tracking_no,
        carrier_name=carrier_name,
    )


def cancel_order(
    order_id: int, actor, reason: str = "", expected_version: Optional[int] = None
) -> Dict[str, Any]:
    """Any non-terminal state → CANCELLED."""
    return _run_order_transition("cancel", order_id, actor, expected_version, reason=reason)


def record_payment_note(
    order_id: int,
    actor,
    method: Optional[str] = None,
    amount: Any = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Append a payment note to the order. Status is unchanged."""
    return _run_order_transition(
        "pay", order_id, actor, expected_version, method=method, amount=amount
    )


# ── Shipment-level transitions ──────────────────────────────────────────────


def reflect_shipment_status(
    uow: UnitOfWork, order: Order, shipment: Shipment, actor_id: str
) -> bool:
    """Mirror an IN_TRANSIT or DELIVERED shipment onto its order. Returns True if the order changed."""
    if shipment.status_code == "IN_TRANSIT":
        if order.status_code == "DELIVERED":
            return False
        order.status_code = "SHIPPED"
        if order.shipped_at is None:
            order.shipped_at = shipment.shipped_at or timezone.now()
        if not order.tracking_no and shipment.tracking_no:
            order.tracking_no = shipment.tracking_no
        uow.save(order, ["status_code", "shipped_at", "tracking_no"], actor_id)
        return True

    if shipment.status_code == "DELIVERED":
        order.status_code = "DELIVERED"
        order.delivered_at = shipment.delivered_at or timezone.now()
        uow.save(order, ["status_code", "delivered_at"], actor_id)
        invoicing.ensure_invoice(uow, order, actor_id)
        return True

    return False


def _mark_in_transit(uow, shipment: Shipment, order: Order, gate: AuthorizationGate) -> List[str]:
    shipment.status_code = "IN_TRANSIT"
    if shipment.shipped_at is None:
        shipment.shipped_at = timezone.now()
    return ["status_code", "shipped_at"]


def _mark_delivered(uow, shipment: Shipment, order: Order, gate: AuthorizationGate) -> List[str]:
    for item in _ordered_items(order):
        inventory = stock_ledger.receive_warehouse_stock(
            uow, order.warehouse_id, item.product_id, item.quantity, gate.actor_id
        )
        stock_ledger.record_transaction(
            uow,
            warehouse_id=order.warehouse_id,
            product_id=item.product_id,
            quantity=item.quantity,
            txn_type="RECEIPT",
            actor_id=gate.actor_id,
            reference_type="SHIPMENT",
            reference_id=shipment.shipment_id,
            notes=f"Shipment #{shipment.shipment_id} delivered for Order #{order.order_id}",
        )
        tasks.enqueue_putaway(uow, order, item, inventory, gate.actor_id)

    shipment.status_code = "DELIVERED"
    shipment.delivered_at = timezone.now()
    return ["status_code", "delivered_at"]


SHIPMENT_TRANSITIONS: Dict[str, ShipmentTransition] = {
    t.name: t
    for t in (
        ShipmentTransition(
            "mark_shipped",
            "mark this shipment shipped",
            frozenset({"PENDING", "DELAYED"}),
            "IN_TRANSIT",
            _supplier_owner,
            _mark_in_transit,
        ),
        ShipmentTransition(
            "mark_delivered",
            "mark this shipment delivered",
            frozenset({"PENDING", "IN_TRANSIT", "DELAYED"}),
            "DELIVERED",
            _warehouse_owner,
            _mark_delivered,
        ),
    )
}

_SHIPMENT_DISPATCH: Dict[tuple, ShipmentTransition] = {
    (source, t.name): t for t in SHIPMENT_TRANSITIONS.values() for source in t.sources
}


def _run_shipment_transition(
    name: str,
    shipment_id: int,
    actor,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    declared = SHIPMENT_TRANSITIONS[name]
    gate = gate_for(actor)

    with UnitOfWork() as uow:
        order_id = (
            Shipment.objects.filter(shipment_id=shipment_id)
            .values_list("order_id", flat=True)
            .first()
        )
        if order_id is None:
            raise NotFound("Shipment not found.")
        order = uow.lock_order(order_id)
        shipment = uow.lock_shipment(shipment_id)
        gate.require(declared.authorize(gate, order), declared.action)
        uow.check_version(shipment, expected_version)

        if shipment.status_code == declared.done_status:
            logger.info(
                "shipment.%s_noop shipment_id=%s status=%s actor=%s",
                name,
                shipment.shipment_id,
                shipment.status_code,
                gate.actor_id,
            )
            return {
                "shipment": serialize_shipment(shipment),
                "order": serialize_order(order),
                "changed": False,
            }

        transition = _SHIPMENT_DISPATCH.get((shipment.status_code, name))
        if transition is None:
            raise PreconditionFailed(
                f"Cannot {name.replace('_', ' ')} a shipment in {shipment.status_code} status.",
                code="invalid_transition",
            )
        if order.status_code in ("CANCELLED", "REJECTED"):
            raise PreconditionFailed(
                f"Order #{order.order_id} is {order.status_code}.",
            )

        fields = transition.apply(uow, shipment, order, gate)
        uow.save(shipment, fields, gate.actor_id)
        reflect_shipment_status(uow, order, shipment, gate.actor_id)
        uow.on_commit(
            notify(
                f"shipment.{name}",
                shipment_id=shipment.shipment_id,
                order_id=order.order_id,
            )
        )

    logger.info(
        "shipment.%s shipment_id=%s order_id=%s order_status=%s actor=%s",
        name,
        shipment.shipment_id,
        order.order_id,
        order.status_code,
        gate.actor_id,
    )
    return {
        "shipment": serialize_shipment(shipment),
        "order": serialize_order(order),
        "changed": True,
    }


def mark_shipment_shipped(
    shipment_id: int, actor, expected_version: Optional[int] = None
) -> Dict[str, Any]:
    """Shipment → IN_TRANSIT and order → SHIPPED. A repeat call is a no-op."""
    return _run_shipment_transition("mark_shipped", shipment_id, actor, expected_version)


def mark_shipment_delivered(
    shipment_id: int, actor, expected_version: Optional[int] = None
) -> Dict[str, Any]:
    """Receive every line into the warehouse, then shipment and order → DELIVERED.

    A repeat call is a no-op: stock, log rows, tasks and the invoice are
    produced exactly once per shipment.
    """
    return _run_shipment_transition("mark_delivered", shipment_id, actor, expected_version)
