"""
Django models for supplier orders and the stock they move.

Master data (Supplier, Warehouse, Product) is maintained elsewhere and is only
read here. Order, OrderItem, Shipment, WarehouseTask, Invoice and Payment are
written through orders.services; stock counters and the inventory transaction
log are written only by the order lifecycle.
"""

from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone


# =============================================================================
# Base Model with Audit Fields
# =============================================================================

class AuditedModel(models.Model):
    """
    Abstract base model providing common audit fields.
    version_nbr is bumped on every lifecycle write and backs optimistic checks.
    """
    create_by_id = models.CharField(max_length=50)
    create_dtime = models.DateTimeField(auto_now_add=True)
    update_by_id = models.CharField(max_length=50)
    update_dtime = models.DateTimeField(auto_now=True)
    version_nbr = models.IntegerField(default=1)

    class Meta:
        abstract = True


# =============================================================================
# Master Data
# =============================================================================

class Supplier(AuditedModel):
    STATUS_CHOICES = [
        ('A', 'Active'),
        ('I', 'Inactive'),
    ]

    supplier_id = models.AutoField(primary_key=True)
    supplier_code = models.CharField(max_length=20, unique=True)
    supplier_name = models.CharField(max_length=120)
    contact_name = models.CharField(max_length=80, null=True, blank=True)
    email_text = models.EmailField(max_length=100, null=True, blank=True)
    status_code = models.CharField(max_length=1, choices=STATUS_CHOICES, default='A')

    class Meta:
        db_table = 'supplier'
        ordering = ['supplier_name']

    def __str__(self):
        return f"{self.supplier_code} - {self.supplier_name}"


class Warehouse(AuditedModel):
    STATUS_CHOICES = [
        ('A', 'Active'),
        ('I', 'Inactive'),
    ]

    warehouse_id = models.AutoField(primary_key=True)
    warehouse_code = models.CharField(max_length=20, unique=True)
    warehouse_name = models.CharField(max_length=120)
    location_text = models.CharField(max_length=255, null=True, blank=True)
    status_code = models.CharField(max_length=1, choices=STATUS_CHOICES, default='A')

    class Meta:
        db_table = 'warehouse'
        ordering = ['warehouse_name']

    def __str__(self):
        return f"{self.warehouse_code} - {self.warehouse_name}"


class Product(AuditedModel):
    """
    A supplier's catalogue entry. stock_qty is the supplier-side stock that
    supplier confirmation consumes.
    """
    product_id = models.AutoField(primary_key=True)
    supplier = models.ForeignKey(
        Supplier,
        on_delete=models.PROTECT,
        related_name='products'
    )
    sku_code = models.CharField(max_length=40, unique=True)
    product_name = models.CharField(max_length=160)
    unit_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0'))]
    )
    cost_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    reorder_level = models.IntegerField(default=10)
    stock_qty = models.IntegerField(default=0)
    uom_code = models.CharField(max_length=25, default='pcs')
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = 'product'
        ordering = ['product_name']
        indexes = [
            models.Index(fields=['supplier']),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(stock_qty__gte=0), name='ck_product_stock_qty_nonneg'),
        ]

    def __str__(self):
        return f"{self.sku_code} - {self.product_name}"


# =============================================================================
# Orders
# =============================================================================

class Order(AuditedModel):
    """
    A warehouse's purchase order against one supplier.
    Status moves only through orders.services.lifecycle.
    """
    STATUS_CHOICES = [
        ('DRAFT', 'Draft'),
        ('PENDING', 'Pending'),  # legacy rows only
        ('PENDING_APPROVAL', 'Pending Approval'),
        ('APPROVED', 'Approved'),
        ('SENT_TO_SUPPLIER', 'Sent To Supplier'),
        ('CONFIRMED_BY_SUPPLIER', 'Confirmed By Supplier'),
        ('PROCESSING', 'Processing'),
        ('SHIPPED', 'Shipped'),
        ('DELIVERED', 'Delivered'),
        ('CANCELLED', 'Cancelled'),
        ('REJECTED', 'Rejected'),
    ]
    TERMINAL_STATUSES = frozenset({'DELIVERED', 'CANCELLED', 'REJECTED'})
    EDITABLE_STATUSES = frozenset({'DRAFT', 'PENDING_APPROVAL'})

    order_id = models.AutoField(primary_key=True)
    warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        related_name='orders'
    )
    supplier = models.ForeignKey(
        Supplier,
        on_delete=models.PROTECT,
        related_name='orders'
    )
    status_code = models.CharField(max_length=25, choices=STATUS_CHOICES, default='DRAFT')

    approved_at = models.DateTimeField(null=True, blank=True)
    approved_by = models.CharField(max_length=50, null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    tracking_no = models.CharField(max_length=60, null=True, blank=True)

    notes_text = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'supplier_order'
        ordering = ['-create_dtime']
        indexes = [
            models.Index(fields=['warehouse']),
            models.Index(fields=['supplier']),
            models.Index(fields=['status_code']),
        ]

    def __str__(self):
        return f"Order #{self.order_id} ({self.status_code})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_parties = (
            instance.__dict__.get('warehouse_id'),
            instance.__dict__.get('supplier_id'),
        )
        return instance

    def save(self, *args, **kwargs):
        loaded = getattr(self, '_loaded_parties', None)
        if loaded is not None and not self._state.adding:
            if (self.warehouse_id, self.supplier_id) != loaded:
                raise ValueError("Order warehouse and supplier cannot change after creation.")
        super().save(*args, **kwargs)

    @property
    def is_terminal(self) -> bool:
        return self.status_code in self.TERMINAL_STATUSES


class OrderItem(AuditedModel):
    """
    Line item within an order. unit_price is captured when the line is added
    and never re-priced.
    """
    order_item_id = models.AutoField(primary_key=True)
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items'
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='order_items'
    )
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    unit_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0'))]
    )

    class Meta:
        db_table = 'supplier_order_item'
        ordering = ['order_item_id']
        indexes = [
            models.Index(fields=['order']),
            models.Index(fields=['product']),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gt=0), name='ck_order_item_qty_positive'),
        ]

    def __str__(self):
        return f"Order #{self.order_id} - Product {self.product_id} x {self.quantity}"

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


# =============================================================================
# Warehouse Stock
# =============================================================================

class WarehouseInventory(AuditedModel):
    """
    On-hand stock of one product in one warehouse.
    """
    inventory_id = models.AutoField(primary_key=True)
    warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.CASCADE,
        related_name='inventory'
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='inventory'
    )
    on_hand_qty = models.IntegerField(default=0)
    damaged_qty = models.IntegerField(default=0)
    reorder_level = models.IntegerField(default=10)
    aisle_code = models.CharField(max_length=10, null=True, blank=True)
    shelf_code = models.CharField(max_length=10, null=True, blank=True)
    bin_code = models.CharField(max_length=20, null=True, blank=True)
    expiry_date = models.DateField(null=True, blank=True)

    class Meta:
        db_table = 'warehouse_inventory'
        ordering = ['warehouse', 'product']
        constraints = [
            models.UniqueConstraint(fields=['warehouse', 'product'], name='uq_inventory_warehouse_product'),
            models.CheckConstraint(condition=Q(on_hand_qty__gte=0), name='ck_inventory_on_hand_nonneg'),
        ]

    def __str__(self):
        return f"W{self.warehouse_id} P{self.product_id}: {self.on_hand_qty}"

    @property
    def available_qty(self) -> int:
        return max(0, self.on_hand_qty - self.damaged_qty)

    @property
    def needs_reorder(self) -> bool:
        return self.available_qty <= self.reorder_level

    def is_expired(self, today=None) -> bool:
        if self.expiry_date is None:
            return False
        return self.expiry_date < (today or timezone.now().date())

    @property
    def location_label(self) -> str:
        return f"{self.aisle_code or 'A'}-{self.shelf_code or '1'}-{self.bin_code or '1'}"


class InventoryTransaction(models.Model):
    """
    Immutable stock movement log. Rows are appended by the order lifecycle and
    are never updated or deleted.
    """
    TYPE_CHOICES = [
        ('RECEIPT', 'Receipt'),
        ('ISSUE', 'Issue'),
        ('ADJUSTMENT', 'Adjustment'),
        ('TRANSFER_IN', 'Transfer In'),
        ('TRANSFER_OUT', 'Transfer Out'),
    ]

    txn_id = models.AutoField(primary_key=True)
    warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        related_name='inventory_transactions'
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='inventory_transactions'
    )
    quantity = models.IntegerField()
    txn_type = models.CharField(max_length=15, choices=TYPE_CHOICES)
    reference_type = models.CharField(max_length=30, null=True, blank=True)
    reference_id = models.IntegerField(null=True, blank=True)
    notes_text = models.CharField(max_length=500, null=True, blank=True)
    actor_user_id = models.CharField(max_length=50)
    txn_dtime = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'inventory_transaction'
        ordering = ['-txn_dtime', '-txn_id']
        indexes = [
            models.Index(fields=['warehouse', 'product']),
            models.Index(fields=['reference_type', 'reference_id']),
        ]

    def __str__(self):
        return f"{self.txn_type} {self.quantity:+d} W{self.warehouse_id} P{self.product_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Inventory transactions are append-only.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Inventory transactions are append-only.")


# =============================================================================
# Fulfilment Side Effects
# =============================================================================

class Shipment(AuditedModel):
    STATUS_CHOICES = [
        ('PENDING', 'Pending'),
        ('IN_TRANSIT', 'In Transit'),
        ('DELIVERED', 'Delivered'),
        ('DELAYED', 'Delayed'),
        ('CANCELLED', 'Cancelled'),
        ('RETURNED', 'Returned'),
    ]

    shipment_id = models.AutoField(primary_key=True)
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='shipments'
    )
    status_code = models.CharField(max_length=15, choices=STATUS_CHOICES, default='PENDING')
    carrier_name = models.CharField(max_length=80, null=True, blank=True)
    tracking_no = models.CharField(max_length=60, null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'shipment'
        ordering = ['-create_dtime']
        indexes = [
            models.Index(fields=['order']),
            models.Index(fields=['status_code']),
        ]

    def __str__(self):
        return f"Shipment #{self.shipment_id} ({self.status_code})"


class WarehouseTask(AuditedModel):
    TYPE_CHOICES = [
        ('PUTAWAY', 'Putaway'),
        ('PICK', 'Pick'),
        ('CYCLE_COUNT', 'Cycle Count'),
    ]
    STATUS_CHOICES = [
        ('OPEN', 'Open'),
        ('IN_PROGRESS', 'In Progress'),
        ('DONE', 'Done'),
    ]

    task_id = models.AutoField(primary_key=True)
    warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.CASCADE,
        related_name='tasks'
    )
    order = models.ForeignKey(
        Order,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='tasks'
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='tasks'
    )
    task_type = models.CharField(max_length=15, choices=TYPE_CHOICES)
    status_code = models.CharField(max_length=15, choices=STATUS_CHOICES, default='OPEN')
    quantity = models.IntegerField(default=0)
    bin_code = models.CharField(max_length=20, null=True, blank=True)
    assigned_to = models.CharField(max_length=50, null=True, blank=True)
    due_dtime = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'warehouse_task'
        ordering = ['due_dtime', 'task_id']
        indexes = [
            models.Index(fields=['warehouse', 'status_code']),
        ]

    def __str__(self):
        return f"{self.task_type} #{self.task_id} ({self.status_code})"


class Invoice(AuditedModel):
    STATUS_CHOICES = [
        ('UNPAID', 'Unpaid'),
        ('PARTIALLY_PAID', 'Partially Paid'),
        ('PAID', 'Paid'),
    ]

    invoice_id = models.AutoField(primary_key=True)
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='invoices'
    )
    supplier = models.ForeignKey(
        Supplier,
        on_delete=models.PROTECT,
        related_name='invoices'
    )
    amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    status_code = models.CharField(max_length=15, choices=STATUS_CHOICES, default='UNPAID')
    issued_at = models.DateTimeField()
    due_date = models.DateField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    payment_method = models.CharField(max_length=40, null=True, blank=True)
    notes_text = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'invoice'
        ordering = ['-issued_at']
        constraints = [
            models.UniqueConstraint(fields=['order'], name='uq_invoice_order'),
        ]

    def __str__(self):
        return f"Invoice #{self.invoice_id} for Order #{self.order_id} ({self.status_code})"


class Payment(AuditedModel):
    STATUS_CHOICES = [
        ('PENDING', 'Pending'),
        ('CAPTURED', 'Captured'),
        ('FAILED', 'Failed'),
        ('CANCELLED', 'Cancelled'),
    ]

    payment_id = models.AutoField(primary_key=True)
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='payments'
    )
    amount = models.DecimalField(max_digits=15, decimal_places=2)
    currency_code = models.CharField(max_length=10)
    method_code = models.CharField(max_length=40, default='Unknown')
    gateway_name = models.CharField(max_length=40)
    gateway_txn_id = models.CharField(max_length=80, null=True, blank=True)
    status_code = models.CharField(max_length=15, choices=STATUS_CHOICES, default='PENDING')
    notes_text = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'payment'
        ordering = ['-create_dtime']

    def __str__(self):
        return f"Payment #{self.payment_id} {self.amount} {self.currency_code} ({self.status_code})"
