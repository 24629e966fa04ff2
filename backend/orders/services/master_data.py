"""Read-only lookups of supplier, warehouse and product master data."""
from __future__ import annotations

from orders.models import Product, Supplier, Warehouse
from orders.services.errors import NotFound


def get_product(product_id: int) -> Product:
    try:
        return Product.objects.select_related("supplier").get(product_id=product_id)
    except Product.DoesNotExist:
        raise NotFound(f"Product {product_id} not found.")


def get_supplier(supplier_id: int) -> Supplier:
    try:
        return Supplier.objects.get(supplier_id=supplier_id)
    except Supplier.DoesNotExist:
        raise NotFound(f"Supplier {supplier_id} not found.")


def get_warehouse(warehouse_id: int) -> Warehouse:
    try:
        return Warehouse.objects.get(warehouse_id=warehouse_id)
    except Warehouse.DoesNotExist:
        raise NotFound(f"Warehouse {warehouse_id} not found.")
