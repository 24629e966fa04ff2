"""Warehouse work items raised by stock receipts."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from orders.models import Order, OrderItem, WarehouseInventory, WarehouseTask
from orders.services.authorization import gate_for
from orders.services.errors import NotFound, PreconditionFailed, ValidationFailed
from orders.services.unit_of_work import UnitOfWork

logger = logging.getLogger("scm.audit")


def serialize_task(task: WarehouseTask) -> Dict[str, Any]:
    return {
        "task_id": task.task_id,
        "warehouse_id": task.warehouse_id,
        "order_id": task.order_id,
        "product_id": task.product_id,
        "task_type": task.task_type,
        "status_code": task.status_code,
        "quantity": task.quantity,
        "bin_code": task.bin_code,
        "assigned_to": task.assigned_to,
        "due_dtime": task.due_dtime.isoformat() if task.due_dtime else None,
        "started_at": task.started_at.isoformat() if task.started_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


def enqueue_putaway(
    uow: UnitOfWork,
    order: Order,
    item: OrderItem,
    inventory: WarehouseInventory,
    actor_id: str,
) -> WarehouseTask:
    """Append an OPEN putaway task for goods just received into ``inventory``."""
    uow.ensure_active()
    return WarehouseTask.objects.create(
        warehouse_id=order.warehouse_id,
        order=order,
        product_id=item.product_id,
        task_type="PUTAWAY",
        status_code="OPEN",
        quantity=item.quantity,
        bin_code=inventory.bin_code,
        due_dtime=timezone.now() + timedelta(days=settings.PUTAWAY_TASK_DUE_DAYS),
        create_by_id=actor_id,
        update_by_id=actor_id,
    )


def list_tasks(actor, status: Optional[str] = None) -> List[Dict[str, Any]]:
    gate = gate_for(actor)
    qs = WarehouseTask.objects.all()
    if not gate.is_admin:
        gate.require(gate.principal.warehouse_id is not None, "view warehouse tasks")
        qs = qs.filter(warehouse_id=gate.principal.warehouse_id)
    if status:
        normalized = status.strip().upper()
        if normalized not in dict(WarehouseTask.STATUS_CHOICES):
            raise ValidationFailed(f"Unknown task status {status!r}.", field="status")
        qs = qs.filter(status_code=normalized)
    return [serialize_task(task) for task in qs]


def _locked_task(task_id: int) -> WarehouseTask:
    try:
        return WarehouseTask.objects.select_for_update().get(task_id=task_id)
    except WarehouseTask.DoesNotExist:
        raise NotFound("Task not found.")


@transaction.atomic
def start_task(task_id: int, actor) -> Dict[str, Any]:
    """Claim a task: OPEN → IN_PROGRESS."""
    gate = gate_for(actor)
    task = _locked_task(task_id)
    gate.require(gate.owns_warehouse(task.warehouse_id), "start this task")

    if task.status_code != "OPEN":
        raise PreconditionFailed(f"Cannot start a task in {task.status_code} status.")

    task.status_code = "IN_PROGRESS"
    task.assigned_to = gate.actor_id
    task.started_at = timezone.now()
    task.update_by_id = gate.actor_id
    task.version_nbr += 1
    task.save(
        update_fields=[
            "status_code",
            "assigned_to",
            "started_at",
            "update_by_id",
            "version_nbr",
            "update_dtime",
        ]
    )
    logger.info("task.started task_id=%s actor=%s", task.task_id, gate.actor_id)
    return serialize_task(task)


@transaction.atomic
def complete_task(task_id: int, actor) -> Dict[str, Any]:
    """Finish a task: OPEN/IN_PROGRESS → DONE."""
    gate = gate_for(actor)
    task = _locked_task(task_id)
    gate.require(gate.owns_warehouse(task.warehouse_id), "complete this task")

    if task.status_code == "DONE":
        raise PreconditionFailed("Task is already done.")

    task.status_code = "DONE"
    task.assigned_to = task.assigned_to or gate.actor_id
    task.completed_at = timezone.now()
    task.update_by_id = gate.actor_id
    task.version_nbr += 1
    task.save(
        update_fields=[
            "status_code",
            "assigned_to",
            "completed_at",
            "update_by_id",
            "version_nbr",
            "update_dtime",
        ]
    )
    logger.info("task.completed task_id=%s actor=%s", task.task_id, gate.actor_id)
    return serialize_task(task)
