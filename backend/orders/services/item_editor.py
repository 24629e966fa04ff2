"""
Line-item editing for orders that have not yet been approved.

Quantities are checked against the supplier's current stock: across all
lines of one order, the quantity committed for a product never exceeds
that product's stock at the time of the edit. Prices are captured when a
line is first added and are not re-priced later.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.db.models import Sum

from orders.models import Order, OrderItem, Product
from orders.services import master_data
from orders.services.authorization import AuthorizationGate, gate_for
from orders.services.errors import (
    InsufficientStock,
    NotFound,
    PreconditionFailed,
    ValidationFailed,
)
from orders.services.queries import serialize_order
from orders.services.unit_of_work import UnitOfWork

logger = logging.getLogger("scm.audit")


def _require_int(value, field: str, allow_negative: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailed(f"{field} must be an integer.", field=field)
    if not allow_negative and value <= 0:
        raise ValidationFailed(f"{field} must be a positive integer.", field=field)
    return value


def _authorize_edit(gate: AuthorizationGate, order: Order) -> None:
    gate.require(gate.owns_warehouse(order.warehouse_id), "edit items on this order")


def _require_editable(order: Order) -> None:
    if order.status_code not in Order.EDITABLE_STATUSES:
        raise PreconditionFailed(
            f"Items can only be changed while the order is DRAFT or PENDING_APPROVAL "
            f"(current: {order.status_code}).",
        )


def quantity_in_order(order: Order, product_id: int) -> int:
    total = order.items.filter(product_id=product_id).aggregate(total=Sum("quantity"))["total"]
    return int(total or 0)


def available_for_product(order: Order, product: Product) -> int:
    """Supplier stock still uncommitted by this order."""
    return product.stock_qty - quantity_in_order(order, product.product_id)


def _add_line(order: Order, product: Product, qty: int, actor_id: str) -> OrderItem:
    if product.supplier_id != order.supplier_id:
        raise ValidationFailed(
            "Product does not belong to this order's supplier.",
            code="supplier_mismatch",
            field="product_id",
        )
    if not product.is_active:
        raise ValidationFailed("Product is inactive.", code="product_inactive", field="product_id")

    remaining = available_for_product(order, product)
    if remaining <= 0:
        raise InsufficientStock(
            product.product_id,
            requested=qty,
            available=0,
            message=f"Out of stock. Supplier has 0 available for '{product.product_name}'.",
            code="out_of_stock",
        )
    if qty > remaining:
        raise InsufficientStock(
            product.product_id,
            requested=qty,
            available=remaining,
            message=f"Cannot add {qty}. Only {remaining} available.",
        )

    line = order.items.filter(product_id=product.product_id).first()
    if line is not None:
        line.quantity += qty
        line.update_by_id = actor_id
        line.save(update_fields=["quantity", "update_by_id", "update_dtime"])
    else:
        line = OrderItem.objects.create(
            order=order,
            product=product,
            quantity=qty,
            unit_price=product.unit_price,
            create_by_id=actor_id,
            update_by_id=actor_id,
        )
    return line


# ── Core Operations ─────────────────────────────────────────────────────────


def create_order(
    warehouse_id: int,
    supplier_id: int,
    actor,
    initial_product_id: Optional[int] = None,
    initial_qty: Optional[int] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a DRAFT order, optionally with a first line."""
    gate = gate_for(actor)
    warehouse = master_data.get_warehouse(warehouse_id)
    supplier = master_data.get_supplier(supplier_id)
    gate.require(
        gate.owns_warehouse(warehouse.warehouse_id), "create orders for this warehouse"
    )
    if initial_product_id is not None:
        _require_int(initial_qty, "quantity")

    with UnitOfWork():
        order = Order.objects.create(
            warehouse=warehouse,
            supplier=supplier,
            status_code="DRAFT",
            notes_text=(notes or "").strip() or None,
            create_by_id=gate.actor_id,
            update_by_id=gate.actor_id,
        )
        if initial_product_id is not None:
            product = master_data.get_product(initial_product_id)
            _add_line(order, product, initial_qty, gate.actor_id)

    logger.info(
        "order.created order_id=%s warehouse_id=%s supplier_id=%s actor=%s",
        order.order_id,
        warehouse.warehouse_id,
        supplier.supplier_id,
        gate.actor_id,
    )
    return serialize_order(order)


def add_item(
    order_id: int,
    product_id: int,
    qty: int,
    actor,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Add ``qty`` of a product, merging into an existing line for that product."""
    gate = gate_for(actor)
    _require_int(qty, "quantity")
    with UnitOfWork() as uow:
        order = uow.lock_order(order_id)
        _authorize_edit(gate, order)
        uow.check_version(order, expected_version)
        _require_editable(order)

        product = master_data.get_product(product_id)
        line = _add_line(order, product, qty, gate.actor_id)
        uow.save(order, [], gate.actor_id)

    logger.info(
        "order.item_added order_id=%s product_id=%s qty=%s line_qty=%s actor=%s",
        order.order_id,
        product_id,
        qty,
        line.quantity,
        gate.actor_id,
    )
    return serialize_order(order)


def update_item_quantity(
    order_id: int,
    product_id: int,
    delta: int,
    actor,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Change a line's quantity by ``delta``; a result of zero or less removes the line."""
    gate = gate_for(actor)
    _require_int(delta, "delta", allow_negative=True)
    with UnitOfWork() as uow:
        order = uow.lock_order(order_id)
        _authorize_edit(gate, order)
        uow.check_version(order, expected_version)
        _require_editable(order)

        line = order.items.select_related("product").filter(product_id=product_id).first()
        if line is None or delta == 0:
            return serialize_order(order)

        new_qty = line.quantity + delta
        if new_qty <= 0:
            line.delete()
        else:
            if delta > 0:
                remaining = line.product.stock_qty - quantity_in_order(order, product_id)
                if delta > remaining:
                    raise InsufficientStock(
                        product_id,
                        requested=delta,
                        available=max(0, remaining),
                        message=f"Cannot add {delta}. Only {max(0, remaining)} available.",
                    )
            line.quantity = new_qty
            line.update_by_id = gate.actor_id
            line.save(update_fields=["quantity", "update_by_id", "update_dtime"])
        uow.save(order, [], gate.actor_id)

    logger.info(
        "order.item_updated order_id=%s product_id=%s delta=%s new_qty=%s actor=%s",
        order.order_id,
        product_id,
        delta,
        max(new_qty, 0),
        gate.actor_id,
    )
    return serialize_order(order)


def remove_item(
    order_id: int,
    product_id: int,
    actor,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Remove the product's line from the order."""
    gate = gate_for(actor)
    with UnitOfWork() as uow:
        order = uow.lock_order(order_id)
        _authorize_edit(gate, order)
        uow.check_version(order, expected_version)
        _require_editable(order)

        deleted, _ = order.items.filter(product_id=product_id).delete()
        if not deleted:
            raise NotFound("Order item not found.")
        uow.save(order, [], gate.actor_id)

    logger.info(
        "order.item_removed order_id=%s product_id=%s actor=%s",
        order.order_id,
        product_id,
        gate.actor_id,
    )
    return serialize_order(order)
