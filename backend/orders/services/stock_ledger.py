"""
Stock counters moved by the order lifecycle.

Two counters are kept here: supplier stock (Product.stock_qty) and warehouse
on-hand inventory (WarehouseInventory.on_hand_qty), plus the append-only
InventoryTransaction log. Every function takes the caller's active
UnitOfWork; a shortfall raises InsufficientStock and the caller's whole
transaction rolls back.
"""
from __future__ import annotations

import logging
from typing import Optional

from django.conf import settings

from orders.models import InventoryTransaction, Product, WarehouseInventory
from orders.services.errors import InsufficientStock, NotFound, ValidationFailed
from orders.services.unit_of_work import UnitOfWork

logger = logging.getLogger("scm.audit")


def _require_positive(qty: int) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise ValidationFailed("Quantity must be a positive integer.", field="quantity")
    return qty


def reserve_supplier_stock(uow: UnitOfWork, product_id: int, qty: int) -> Product:
    """Decrement a product's supplier stock by ``qty``."""
    uow.ensure_active()
    _require_positive(qty)
    try:
        product = Product.objects.select_for_update().get(product_id=product_id)
    except Product.DoesNotExist:
        raise NotFound(f"Product {product_id} not found.")

    if product.stock_qty < qty:
        raise InsufficientStock(
            product_id,
            requested=qty,
            available=product.stock_qty,
            message=(
                f"Insufficient supplier stock for '{product.product_name}': "
                f"requested {qty}, available {product.stock_qty}."
            ),
        )

    product.stock_qty -= qty
    product.save(update_fields=["stock_qty", "update_dtime"])
    logger.info(
        "stock.supplier_reserved product_id=%s qty=%s remaining=%s",
        product_id,
        qty,
        product.stock_qty,
    )
    return product


def release_warehouse_stock(
    uow: UnitOfWork, warehouse_id: int, product_id: int, qty: int
) -> WarehouseInventory:
    """Decrement a warehouse's on-hand quantity by ``qty``."""
    uow.ensure_active()
    _require_positive(qty)
    inventory = (
        WarehouseInventory.objects.select_for_update()
        .filter(warehouse_id=warehouse_id, product_id=product_id)
        .first()
    )
    on_hand = inventory.on_hand_qty if inventory is not None else 0
    if inventory is None or on_hand < qty:
        raise InsufficientStock(
            product_id,
            requested=qty,
            available=on_hand,
            message=(
                f"Insufficient inventory in warehouse {warehouse_id} for product "
                f"{product_id}: requested {qty}, on hand {on_hand}."
            ),
        )

    inventory.on_hand_qty -= qty
    inventory.save(update_fields=["on_hand_qty", "update_dtime"])
    logger.info(
        "stock.warehouse_released warehouse_id=%s product_id=%s qty=%s on_hand=%s",
        warehouse_id,
        product_id,
        qty,
        inventory.on_hand_qty,
    )
    return inventory


def receive_warehouse_stock(
    uow: UnitOfWork, warehouse_id: int, product_id: int, qty: int, actor_id: str
) -> WarehouseInventory:
    """Increment a warehouse's on-hand quantity, creating the row when absent."""
    uow.ensure_active()
    _require_positive(qty)
    inventory = (
        WarehouseInventory.objects.select_for_update()
        .filter(warehouse_id=warehouse_id, product_id=product_id)
        .first()
    )
    if inventory is None:
        inventory = WarehouseInventory.objects.create(
            warehouse_id=warehouse_id,
            product_id=product_id,
            on_hand_qty=qty,
            reorder_level=settings.RECEIPT_DEFAULT_REORDER_LEVEL,
            create_by_id=actor_id,
            update_by_id=actor_id,
        )
    else:
        inventory.on_hand_qty += qty
        inventory.update_by_id = actor_id
        inventory.save(update_fields=["on_hand_qty", "update_by_id", "update_dtime"])

    logger.info(
        "stock.warehouse_received warehouse_id=%s product_id=%s qty=%s on_hand=%s",
        warehouse_id,
        product_id,
        qty,
        inventory.on_hand_qty,
    )
    return inventory


def record_transaction(
    uow: UnitOfWork,
    *,
    warehouse_id: int,
    product_id: int,
    quantity: int,
    txn_type: str,
    actor_id: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> InventoryTransaction:
    """Append one row to the inventory transaction log."""
    uow.ensure_active()
    return InventoryTransaction.objects.create(
        warehouse_id=warehouse_id,
        product_id=product_id,
        quantity=quantity,
        txn_type=txn_type,
        reference_type=reference_type,
        reference_id=reference_id,
        notes_text=notes,
        actor_user_id=actor_id,
    )
