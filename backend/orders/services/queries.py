"""
Read paths for orders: serialization, actor-scoped listing and detail.
"""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from django.db.models import Count, Q, QuerySet

from orders.models import InventoryTransaction, Order, Shipment, WarehouseInventory
from orders.services.authorization import AuthorizationGate, gate_for
from orders.services.errors import NotFound, ValidationFailed

_DUE_STATUSES = ("APPROVED", "PROCESSING", "CONFIRMED_BY_SUPPLIER")

STATUS_ALIASES = {
    "draft": ("DRAFT",),
    "pending": ("PENDING_APPROVAL",),
    "pendingapproval": ("PENDING_APPROVAL",),
    "approved": ("APPROVED",),
    "sent": ("SENT_TO_SUPPLIER",),
    "senttosupplier": ("SENT_TO_SUPPLIER",),
    "confirmed": ("CONFIRMED_BY_SUPPLIER",),
    "confirmedbysupplier": ("CONFIRMED_BY_SUPPLIER",),
    "processing": ("PROCESSING",),
    "shipped": ("SHIPPED",),
    "delivered": ("DELIVERED",),
    "rejected": ("REJECTED",),
    "cancelled": ("CANCELLED",),
    "canceled": ("CANCELLED",),
}


def serialize_order(order: Order) -> Dict[str, Any]:
    """Serialize an Order instance to a response dict."""
    items = []
    total = Decimal("0.00")
    for item in order.items.select_related("product").order_by("order_item_id"):
        line_total = item.line_total
        total += line_total
        items.append(
            {
                "order_item_id": item.order_item_id,
                "product_id": item.product_id,
                "product_name": item.product.product_name,
                "sku_code": item.product.sku_code,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "line_total": str(line_total),
            }
        )

    return {
        "order_id": order.order_id,
        "warehouse_id": order.warehouse_id,
        "warehouse_name": order.warehouse.warehouse_name,
        "supplier_id": order.supplier_id,
        "supplier_name": order.supplier.supplier_name,
        "status_code": order.status_code,
        "items": items,
        "total_amount": str(total),
        "approved_at": order.approved_at.isoformat() if order.approved_at else None,
        "approved_by": order.approved_by,
        "shipped_at": order.shipped_at.isoformat() if order.shipped_at else None,
        "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
        "tracking_no": order.tracking_no,
        "notes_text": order.notes_text or "",
        "create_by_id": order.create_by_id,
        "create_dtime": order.create_dtime.isoformat() if order.create_dtime else None,
        "update_dtime": order.update_dtime.isoformat() if order.update_dtime else None,
        "version_nbr": order.version_nbr,
    }


def scoped_orders(gate: AuthorizationGate) -> QuerySet:
    """Orders the actor may see. Suppliers never see drafts."""
    qs = Order.objects.select_related("warehouse", "supplier")
    if gate.is_admin:
        return qs
    scope = Q(pk__in=[])
    if gate.owns_warehouse(gate.principal.warehouse_id):
        scope |= Q(warehouse_id=gate.principal.warehouse_id)
    if gate.owns_supplier(gate.principal.supplier_id):
        scope |= Q(supplier_id=gate.principal.supplier_id) & ~Q(status_code="DRAFT")
    return qs.filter(scope)


def _apply_status_filter(qs: QuerySet, status: str) -> QuerySet:
    key = status.strip().lower().replace("_", "").replace("-", "")
    if key == "due":
        return qs.filter(status_code__in=_DUE_STATUSES, shipped_at__isnull=True)
    statuses = STATUS_ALIASES.get(key)
    if statuses is None:
        raise ValidationFailed(f"Unknown status filter {status!r}.", field="status")
    return qs.filter(status_code__in=statuses)


def _apply_search(qs: QuerySet, term: str) -> QuerySet:
    term = term.strip()
    match = Q(supplier__supplier_name__icontains=term) | Q(
        warehouse__warehouse_name__icontains=term
    )
    if term.isdigit():
        match |= Q(order_id=int(term))
    return qs.filter(match)


def list_orders(
    actor, status: Optional[str] = None, q: Optional[str] = None
) -> Tuple[List[Dict[str, Any]], int]:
    gate = gate_for(actor)
    qs = scoped_orders(gate)
    if status:
        qs = _apply_status_filter(qs, status)
    if q and q.strip():
        qs = _apply_search(qs, q)
    orders = list(qs.order_by("-create_dtime", "-order_id"))
    return [serialize_order(order) for order in orders], len(orders)


def get_order(order_id: int, actor) -> Dict[str, Any]:
    gate = gate_for(actor)
    try:
        order = scoped_orders(gate).get(order_id=order_id)
    except Order.DoesNotExist:
        raise NotFound("Order not found.")
    return serialize_order(order)


def status_counts(actor) -> Dict[str, int]:
    gate = gate_for(actor)
    counts = {code: 0 for code, _ in Order.STATUS_CHOICES}
    rows = scoped_orders(gate).order_by().values("status_code").annotate(n=Count("order_id"))
    for row in rows:
        counts[row["status_code"]] = row["n"]
    return counts


def serialize_shipment(shipment: Shipment) -> Dict[str, Any]:
    return {
        "shipment_id": shipment.shipment_id,
        "order_id": shipment.order_id,
        "status_code": shipment.status_code,
        "carrier_name": shipment.carrier_name,
        "tracking_no": shipment.tracking_no,
        "shipped_at": shipment.shipped_at.isoformat() if shipment.shipped_at else None,
        "delivered_at": shipment.delivered_at.isoformat() if shipment.delivered_at else None,
        "version_nbr": shipment.version_nbr,
    }


# ── Warehouse stock ─────────────────────────────────────────────────────────

TRANSACTION_LIMIT = 500


def _scoped_warehouse_id(gate: AuthorizationGate, warehouse_id: Optional[int]) -> Optional[int]:
    """Resolve which warehouse a stock read covers. None means every warehouse."""
    if gate.is_admin:
        return warehouse_id
    own = gate.principal.warehouse_id
    gate.require(gate.owns_warehouse(own), "view warehouse stock")
    gate.require(warehouse_id is None or warehouse_id == own, "view this warehouse's stock")
    return own


def serialize_inventory(inventory: WarehouseInventory, today: Optional[date] = None) -> Dict[str, Any]:
    return {
        "inventory_id": inventory.inventory_id,
        "warehouse_id": inventory.warehouse_id,
        "product_id": inventory.product_id,
        "product_name": inventory.product.product_name,
        "sku_code": inventory.product.sku_code,
        "on_hand_qty": inventory.on_hand_qty,
        "damaged_qty": inventory.damaged_qty,
        "available_qty": inventory.available_qty,
        "reorder_level": inventory.reorder_level,
        "needs_reorder": inventory.needs_reorder,
        "location_label": inventory.location_label,
        "expiry_date": inventory.expiry_date.isoformat() if inventory.expiry_date else None,
        "is_expired": inventory.is_expired(today),
        "version_nbr": inventory.version_nbr,
    }


def serialize_transaction(txn: InventoryTransaction) -> Dict[str, Any]:
    return {
        "txn_id": txn.txn_id,
        "warehouse_id": txn.warehouse_id,
        "product_id": txn.product_id,
        "quantity": txn.quantity,
        "txn_type": txn.txn_type,
        "reference_type": txn.reference_type,
        "reference_id": txn.reference_id,
        "notes_text": txn.notes_text,
        "actor_user_id": txn.actor_user_id,
        "txn_dtime": txn.txn_dtime.isoformat() if txn.txn_dtime else None,
    }


def list_inventory(actor, warehouse_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Stock rows for the actor's warehouse, by product then bin location."""
    gate = gate_for(actor)
    scope = _scoped_warehouse_id(gate, warehouse_id)
    qs = WarehouseInventory.objects.select_related("product")
    if scope is not None:
        qs = qs.filter(warehouse_id=scope)
    qs = qs.order_by("product__product_name", "product_id", "aisle_code", "shelf_code", "bin_code")
    return [serialize_inventory(row) for row in qs]


def list_inventory_transactions(
    actor,
    warehouse_id: Optional[int] = None,
    product_id: Optional[int] = None,
    txn_type: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """
    Stock movements, newest first, capped at TRANSACTION_LIMIT rows.

    ``date_to`` is inclusive: movements at any time on that day are returned.
    """
    gate = gate_for(actor)
    scope = _scoped_warehouse_id(gate, warehouse_id)
    qs = InventoryTransaction.objects.all()
    if scope is not None:
        qs = qs.filter(warehouse_id=scope)
    if product_id is not None:
        qs = qs.filter(product_id=product_id)
    if txn_type:
        normalized = txn_type.strip().upper()
        if normalized not in dict(InventoryTransaction.TYPE_CHOICES):
            raise ValidationFailed(f"Unknown transaction type {txn_type!r}.", field="type")
        qs = qs.filter(txn_type=normalized)
    if date_from and date_to and date_from > date_to:
        raise ValidationFailed("'from' must not be after 'to'.", field="from")
    if date_from:
        qs = qs.filter(txn_dtime__date__gte=date_from)
    if date_to:
        qs = qs.filter(txn_dtime__date__lte=date_to)
    rows = qs.order_by("-txn_dtime", "-txn_id")[:TRANSACTION_LIMIT]
    return [serialize_transaction(txn) for txn in rows]
