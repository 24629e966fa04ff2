"""
Transactional boundary for order lifecycle operations.

A UnitOfWork opens one database transaction, hands out row-locked records,
and writes them back with a version check. Stock counters and side-effect
rows are written only while a UnitOfWork is active, so a failure at any
point rolls back the status change together with every counter mutation.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from django.db import transaction
from django.utils import timezone

from orders.models import Order, Shipment
from orders.services.errors import ConcurrencyConflict, NotFound

logger = logging.getLogger("scm.audit")


class UnitOfWork:
    def __init__(self, using: Optional[str] = None):
        self._atomic = transaction.atomic(using=using)
        self.using = using
        self.active = False

    def __enter__(self) -> "UnitOfWork":
        self._atomic.__enter__()
        self.active = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.active = False
        return self._atomic.__exit__(exc_type, exc, tb)

    def ensure_active(self) -> None:
        if not self.active:
            raise RuntimeError("Stock mutations require an active UnitOfWork.")

    # ── Locked reads ────────────────────────────────────────────────────────

    def lock_order(self, order_id: int) -> Order:
        self.ensure_active()
        try:
            return (
                Order.objects.select_for_update(of=("self",))
                .select_related("warehouse", "supplier")
                .get(order_id=order_id)
            )
        except Order.DoesNotExist:
            raise NotFound("Order not found.")

    def lock_shipment(self, shipment_id: int) -> Shipment:
        self.ensure_active()
        try:
            return Shipment.objects.select_for_update().get(shipment_id=shipment_id)
        except Shipment.DoesNotExist:
            raise NotFound("Shipment not found.")

    # ── Versioned writes ────────────────────────────────────────────────────

    @staticmethod
    def check_version(record, expected_version: Optional[int]) -> None:
        if expected_version is None:
            return
        if int(expected_version) != record.version_nbr:
            raise ConcurrencyConflict(type(record).__name__, record.pk)

    def save(self, record, update_fields: Iterable[str], actor_id: str) -> None:
        """Write ``update_fields`` only if version_nbr is unchanged, then bump it."""
        self.ensure_active()
        model = type(record)
        current_version = record.version_nbr
        now = timezone.now()

        values = {name: getattr(record, name) for name in update_fields}
        values.update(
            update_by_id=actor_id,
            update_dtime=now,
            version_nbr=current_version + 1,
        )
        updated = model.objects.filter(
            pk=record.pk, version_nbr=current_version
        ).update(**values)
        if updated != 1:
            raise ConcurrencyConflict(model.__name__, record.pk)

        record.update_by_id = actor_id
        record.update_dtime = now
        record.version_nbr = current_version + 1

    # ── Hooks ───────────────────────────────────────────────────────────────

    def on_commit(self, func: Callable[[], None]) -> None:
        transaction.on_commit(func, using=self.using)


def notify(event: str, **fields) -> Callable[[], None]:
    """Build a post-commit notification hook. Delivery is not wired up; the hook only logs."""

    def _hook() -> None:
        logger.info(
            "orders.notify event=%s %s",
            event,
            " ".join(f"{key}={value}" for key, value in sorted(fields.items())),
        )

    return _hook
