"""
Invoice issuance for delivered orders.

ensure_invoice is the only automatic path: it is called by every transition
that can leave an order DELIVERED and returns the existing invoice when one
is already on file.
"""
from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from orders.models import Invoice, Order
from orders.services.authorization import gate_for
from orders.services.errors import NotFound, PreconditionFailed
from orders.services.unit_of_work import UnitOfWork

logger = logging.getLogger("scm.audit")

INVOICEABLE_STATUSES = ("SHIPPED", "DELIVERED")


def compute_order_total(order: Order) -> Decimal:
    total = Decimal("0.00")
    for item in order.items.all():
        total += item.line_total
    return total


def serialize_invoice(invoice: Invoice) -> Dict[str, Any]:
    return {
        "invoice_id": invoice.invoice_id,
        "order_id": invoice.order_id,
        "supplier_id": invoice.supplier_id,
        "amount": str(invoice.amount),
        "status_code": invoice.status_code,
        "issued_at": invoice.issued_at.isoformat() if invoice.issued_at else None,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
        "payment_method": invoice.payment_method,
        "notes_text": invoice.notes_text or "",
    }


def _is_invoice_order_conflict(exc: IntegrityError) -> bool:
    message = str(exc).lower()
    return "uq_invoice_order" in message or (
        "invoice" in message and ("unique" in message or "duplicate" in message)
    )


def _create_invoice(order: Order, actor_id: str, due_date: Optional[date]) -> Invoice:
    issued_at = timezone.now()
    return Invoice.objects.create(
        order=order,
        supplier_id=order.supplier_id,
        amount=compute_order_total(order),
        status_code="UNPAID",
        issued_at=issued_at,
        due_date=due_date or (issued_at + timedelta(days=settings.INVOICE_DUE_DAYS)).date(),
        create_by_id=actor_id,
        update_by_id=actor_id,
    )


def ensure_invoice(uow: UnitOfWork, order: Order, actor_id: str) -> Tuple[Invoice, bool]:
    """Return the order's invoice, issuing it first if none exists."""
    uow.ensure_active()
    existing = Invoice.objects.filter(order_id=order.order_id).first()
    if existing is not None:
        return existing, False

    try:
        with transaction.atomic():
            invoice = _create_invoice(order, actor_id, due_date=None)
    except IntegrityError as exc:
        if not _is_invoice_order_conflict(exc):
            raise
        logger.info("invoice.race_lost order_id=%s", order.order_id)
        return Invoice.objects.get(order_id=order.order_id), False

    logger.info(
        "invoice.issued invoice_id=%s order_id=%s amount=%s actor=%s",
        invoice.invoice_id,
        order.order_id,
        invoice.amount,
        actor_id,
    )
    return invoice, True


# ── Supplier Operations ─────────────────────────────────────────────────────


def issue_invoice(order_id: int, actor, due_date: Optional[date] = None) -> Dict[str, Any]:
    """Issue an invoice by hand for a shipped or delivered order."""
    gate = gate_for(actor)
    with UnitOfWork() as uow:
        order = uow.lock_order(order_id)
        gate.require(gate.owns_supplier(order.supplier_id), "invoice this order")

        if order.status_code not in INVOICEABLE_STATUSES:
            raise PreconditionFailed(
                "Only shipped or delivered orders can be invoiced.",
            )
        if Invoice.objects.filter(order_id=order.order_id).exists():
            raise PreconditionFailed(
                "Invoice already exists for this order.", code="invoice_exists"
            )

        invoice = _create_invoice(order, gate.actor_id, due_date)

    logger.info(
        "invoice.issued invoice_id=%s order_id=%s amount=%s actor=%s",
        invoice.invoice_id,
        order.order_id,
        invoice.amount,
        gate.actor_id,
    )
    return serialize_invoice(invoice)


@transaction.atomic
def mark_invoice_paid(invoice_id: int, actor, method: Optional[str] = None) -> Dict[str, Any]:
    gate = gate_for(actor)
    try:
        invoice = Invoice.objects.select_for_update().get(invoice_id=invoice_id)
    except Invoice.DoesNotExist:
        raise NotFound("Invoice not found.")
    gate.require(gate.owns_supplier(invoice.supplier_id), "update this invoice")

    invoice.status_code = "PAID"
    invoice.paid_at = timezone.now()
    invoice.payment_method = (method or "").strip() or None
    invoice.update_by_id = gate.actor_id
    invoice.version_nbr += 1
    invoice.save(
        update_fields=[
            "status_code",
            "paid_at",
            "payment_method",
            "update_by_id",
            "version_nbr",
            "update_dtime",
        ]
    )
    logger.info(
        "invoice.paid invoice_id=%s method=%s actor=%s",
        invoice.invoice_id,
        invoice.payment_method,
        gate.actor_id,
    )
    return serialize_invoice(invoice)


def list_invoices(actor) -> Dict[str, Any]:
    """A supplier's invoices with running totals and the orders still awaiting one."""
    gate = gate_for(actor)
    supplier_id = gate.principal.supplier_id
    gate.require(gate.owns_supplier(supplier_id), "view invoices")

    invoices = list(Invoice.objects.filter(supplier_id=supplier_id))
    eligible = (
        Order.objects.filter(
            supplier_id=supplier_id, status_code__in=INVOICEABLE_STATUSES
        )
        .exclude(invoices__isnull=False)
        .order_by("-create_dtime")
    )

    total_invoiced = sum((inv.amount for inv in invoices), Decimal("0.00"))
    total_paid = sum(
        (inv.amount for inv in invoices if inv.status_code == "PAID"), Decimal("0.00")
    )
    return {
        "invoices": [serialize_invoice(inv) for inv in invoices],
        "eligible_order_ids": [order.order_id for order in eligible],
        "total_invoiced": str(total_invoiced),
        "total_paid": str(total_paid),
        "total_unpaid": str(total_invoiced - total_paid),
    }
