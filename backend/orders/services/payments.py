"""
Payment records for orders.

This is a gateway stub. A payment is opened as PENDING for the order total,
and the gateway's callback outcome (success, failure or cancellation) is
recorded against it. No money moves here.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from orders.models import Payment
from orders.services.authorization import gate_for
from orders.services.errors import NotFound, PreconditionFailed
from orders.services.invoicing import compute_order_total
from orders.services.unit_of_work import UnitOfWork

logger = logging.getLogger("scm.audit")

_UNPAYABLE_ORDER_STATUSES = ("CANCELLED", "REJECTED", "DELIVERED")


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "payment_id": payment.payment_id,
        "order_id": payment.order_id,
        "amount": str(payment.amount),
        "currency_code": payment.currency_code,
        "method_code": payment.method_code,
        "gateway_name": payment.gateway_name,
        "gateway_txn_id": payment.gateway_txn_id,
        "status_code": payment.status_code,
        "notes_text": payment.notes_text or "",
    }


def start_payment(order_id: int, actor, method: Optional[str] = None) -> Dict[str, Any]:
    gate = gate_for(actor)
    with UnitOfWork() as uow:
        order = uow.lock_order(order_id)
        gate.require(gate.owns_warehouse(order.warehouse_id), "pay for this order")
        if order.status_code in _UNPAYABLE_ORDER_STATUSES:
            raise PreconditionFailed(
                "Cannot take payment for orders that are Cancelled, Rejected, or Delivered."
            )

        payment = Payment.objects.create(
            order=order,
            amount=compute_order_total(order),
            currency_code=settings.PAYMENT_CURRENCY,
            method_code=(method or "").strip() or "Unknown",
            gateway_name=settings.PAYMENT_GATEWAY_NAME,
            status_code="PENDING",
            create_by_id=gate.actor_id,
            update_by_id=gate.actor_id,
        )

    logger.info(
        "payment.started payment_id=%s order_id=%s amount=%s actor=%s",
        payment.payment_id,
        order.order_id,
        payment.amount,
        gate.actor_id,
    )
    return serialize_payment(payment)


@transaction.atomic
def _resolve_payment(
    payment_id: int,
    actor,
    target: str,
    note: str,
    gateway_txn_id: Optional[str] = None,
) -> Dict[str, Any]:
    gate = gate_for(actor)
    try:
        payment = Payment.objects.select_for_update().select_related("order").get(
            payment_id=payment_id
        )
    except Payment.DoesNotExist:
        raise NotFound("Payment not found.")
    gate.require(gate.owns_warehouse(payment.order.warehouse_id), "update this payment")

    if payment.status_code != "PENDING":
        raise PreconditionFailed(
            f"Payment is already {payment.status_code}.", code="invalid_transition"
        )

    stamp = timezone.now().strftime("%Y-%m-%d %H:%M:%SZ")
    existing = payment.notes_text or ""
    payment.notes_text = f"{existing}\n[{stamp}] {note}".strip()
    payment.status_code = target
    if gateway_txn_id:
        payment.gateway_txn_id = gateway_txn_id
    payment.update_by_id = gate.actor_id
    payment.version_nbr += 1
    payment.save(
        update_fields=[
            "status_code",
            "notes_text",
            "gateway_txn_id",
            "update_by_id",
            "version_nbr",
            "update_dtime",
        ]
    )
    logger.info(
        "payment.%s payment_id=%s order_id=%s actor=%s",
        target.lower(),
        payment.payment_id,
        payment.order_id,
        gate.actor_id,
    )
    return serialize_payment(payment)


def payment_succeeded(payment_id: int, actor, gateway_txn_id: Optional[str] = None) -> Dict[str, Any]:
    return _resolve_payment(payment_id, actor, "CAPTURED", "Payment captured.", gateway_txn_id)


def payment_failed(payment_id: int, actor, gateway_txn_id: Optional[str] = None) -> Dict[str, Any]:
    return _resolve_payment(payment_id, actor, "FAILED", "Payment failed.", gateway_txn_id)


def payment_cancelled(payment_id: int, actor) -> Dict[str, Any]:
    return _resolve_payment(payment_id, actor, "CANCELLED", "Payment cancelled by user.")
