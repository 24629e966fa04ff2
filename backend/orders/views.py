import logging
import re
from typing import Any, Callable, Dict

from django.utils.dateparse import parse_date
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from api.authentication import LegacyCompatAuthentication
from api.permissions import OrderPermission
from api.rbac import (
    PERM_INVOICE_MANAGE,
    PERM_ORDER_APPROVE,
    PERM_ORDER_CANCEL,
    PERM_ORDER_CREATE,
    PERM_ORDER_EDIT_ITEMS,
    PERM_ORDER_PAY,
    PERM_ORDER_PROCESS,
    PERM_ORDER_REJECT,
    PERM_ORDER_SEND,
    PERM_ORDER_SHIP,
    PERM_ORDER_SUBMIT,
    PERM_ORDER_SUPPLIER_CONFIRM,
    PERM_ORDER_VIEW,
    PERM_SHIPMENT_DELIVER,
    PERM_SHIPMENT_MANAGE,
    PERM_TASK_WORK,
)
from orders.services import (
    invoicing,
    item_editor,
    lifecycle,
    payments,
    queries,
    shipments,
    tasks,
)
from orders.services.errors import (
    ConcurrencyConflict,
    Forbidden,
    InsufficientStock,
    NotFound,
    OrderError,
    PreconditionFailed,
    ValidationFailed,
)

logger = logging.getLogger("scm.audit")


def _parse_int(
    value: Any,
    field_name: str,
    errors: Dict[str, str],
    positive: bool = True,
) -> int | None:
    if isinstance(value, bool) or isinstance(value, float):
        errors[field_name] = "Must be an integer."
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or not re.fullmatch(r"[+-]?\d+", stripped):
            errors[field_name] = "Must be an integer."
            return None
        value = stripped
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        errors[field_name] = "Must be an integer."
        return None
    if positive and parsed <= 0:
        errors[field_name] = "Must be a positive integer."
        return None
    return parsed


def _expected_version(request, errors: Dict[str, str]) -> int | None:
    raw = (request.data or {}).get("version_nbr")
    if raw is None or raw == "":
        return None
    return _parse_int(raw, "version_nbr", errors)


def _text(payload, key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    return str(value)


def _actor_id(request) -> str | None:
    return getattr(request.user, "user_id", None) or getattr(request.user, "username", None)


def _error_response(exc: OrderError, not_found_key: str = "order_id") -> Response:
    if isinstance(exc, NotFound):
        return Response({"errors": {not_found_key: exc.message}, "code": exc.code}, status=404)
    if isinstance(exc, Forbidden):
        return Response({"errors": {"permission": exc.message}, "code": exc.code}, status=403)
    if isinstance(exc, ValidationFailed):
        field = exc.field or "request"
        return Response({"errors": {field: exc.message}, "code": exc.code}, status=400)
    if isinstance(exc, InsufficientStock):
        return Response(
            {
                "errors": {"stock": exc.message},
                "code": exc.code,
                "product_id": exc.product_id,
                "requested": exc.requested,
                "available": exc.available,
                "deficit": exc.deficit,
            },
            status=409,
        )
    if isinstance(exc, ConcurrencyConflict):
        return Response({"errors": {"version_nbr": exc.message}, "code": exc.code}, status=409)
    if isinstance(exc, PreconditionFailed):
        return Response({"errors": {"status": exc.message}, "code": exc.code}, status=409)
    return Response({"errors": {"request": exc.message}, "code": exc.code}, status=400)


def _run(
    request,
    operation: Callable[..., Dict[str, Any]],
    event: str,
    not_found_key: str = "order_id",
    status: int = 200,
    **log_fields: Any,
) -> Response:
    try:
        result = operation()
    except OrderError as exc:
        logger.info(
            "%s_rejected",
            event,
            extra={
                "event_type": "STATE_CHANGE_REJECTED",
                "user_id": _actor_id(request),
                "code": exc.code,
                **log_fields,
            },
        )
        return _error_response(exc, not_found_key)

    logger.info(
        event,
        extra={
            "event_type": "STATE_CHANGE",
            "user_id": _actor_id(request),
            "username": getattr(request.user, "username", None),
            **log_fields,
        },
    )
    return Response(result, status=status)


# ── Orders ──────────────────────────────────────────────────────────────────


@api_view(["GET", "POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_list_create(request):
    if request.method == "GET":
        try:
            results, count = queries.list_orders(
                request.user,
                status=request.query_params.get("status"),
                q=request.query_params.get("q"),
            )
        except OrderError as exc:
            return _error_response(exc)
        return Response({"results": results, "count": count})

    payload = request.data or {}
    errors: Dict[str, str] = {}
    warehouse_id = _parse_int(payload.get("warehouse_id"), "warehouse_id", errors)
    supplier_id = _parse_int(payload.get("supplier_id"), "supplier_id", errors)
    product_id = None
    quantity = None
    if payload.get("product_id") is not None:
        product_id = _parse_int(payload.get("product_id"), "product_id", errors)
        quantity = _parse_int(payload.get("quantity"), "quantity", errors)
    if errors:
        return Response({"errors": errors}, status=400)

    return _run(
        request,
        lambda: item_editor.create_order(
            warehouse_id,
            supplier_id,
            request.user,
            initial_product_id=product_id,
            initial_qty=quantity,
            notes=_text(payload, "notes"),
        ),
        "order_created",
        not_found_key="request",
        status=201,
        warehouse_id=warehouse_id,
        supplier_id=supplier_id,
    )


@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_get(request, order_id: int):
    try:
        return Response(queries.get_order(order_id, request.user))
    except OrderError as exc:
        return _error_response(exc)


@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_status_counts(request):
    return Response({"counts": queries.status_counts(request.user)})


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_item_add(request, order_id: int):
    payload = request.data or {}
    errors: Dict[str, str] = {}
    product_id = _parse_int(payload.get("product_id"), "product_id", errors)
    quantity = _parse_int(payload.get("quantity"), "quantity", errors)
    version = _expected_version(request, errors)
    if errors:
        return Response({"errors": errors}, status=400)

    return _run(
        request,
        lambda: item_editor.add_item(order_id, product_id, quantity, request.user, version),
        "order_item_added",
        order_id=order_id,
        product_id=product_id,
    )


@api_view(["PATCH", "DELETE"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_item_change(request, order_id: int, product_id: int):
    errors: Dict[str, str] = {}
    version = _expected_version(request, errors)

    if request.method == "DELETE":
        if errors:
            return Response({"errors": errors}, status=400)
        return _run(
            request,
            lambda: item_editor.remove_item(order_id, product_id, request.user, version),
            "order_item_removed",
            not_found_key="product_id",
            order_id=order_id,
            product_id=product_id,
        )

    delta = _parse_int((request.data or {}).get("delta"), "delta", errors, positive=False)
    if errors:
        return Response({"errors": errors}, status=400)
    return _run(
        request,
        lambda: item_editor.update_item_quantity(
            order_id, product_id, delta, request.user, version
        ),
        "order_item_updated",
        order_id=order_id,
        product_id=product_id,
        delta=delta,
    )


def _transition_view(request, order_id: int, event: str, operation: Callable[..., Dict[str, Any]], **kwargs):
    errors: Dict[str, str] = {}
    version = _expected_version(request, errors)
    if errors:
        return Response({"errors": errors}, status=400)
    return _run(
        request,
        lambda: operation(order_id, request.user, expected_version=version, **kwargs),
        event,
        order_id=order_id,
    )


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_submit(request, order_id: int):
    return _transition_view(request, order_id, "order_submitted", lifecycle.submit_order)


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_approve(request, order_id: int):
    notes = str((request.data or {}).get("notes") or "")
    return _transition_view(request, order_id, "order_approved", lifecycle.approve_order, notes=notes)


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_reject(request, order_id: int):
    reason = str((request.data or {}).get("reason") or "")
    return _transition_view(request, order_id, "order_rejected", lifecycle.reject_order, reason=reason)


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_send_to_supplier(request, order_id: int):
    return _transition_view(request, order_id, "order_sent_to_supplier", lifecycle.send_to_supplier)


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_supplier_confirm(request, order_id: int):
    return _transition_view(request, order_id, "order_supplier_confirmed", lifecycle.supplier_confirm)


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_supplier_start_processing(request, order_id: int):
    return _transition_view(
        request, order_id, "order_supplier_processing", lifecycle.supplier_start_processing
    )


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_process(request, order_id: int):
    return _transition_view(request, order_id, "order_processing", lifecycle.process_order)


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_ship(request, order_id: int):
    payload = request.data or {}
    return _transition_view(
        request,
        order_id,
        "order_shipped",
        lifecycle.ship_order,
        tracking_no=_text(payload, "tracking_no"),
        carrier_name=_text(payload, "carrier_name"),
    )


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_cancel(request, order_id: int):
    reason = str((request.data or {}).get("reason") or "")
    return _transition_view(request, order_id, "order_cancelled", lifecycle.cancel_order, reason=reason)


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def order_pay(request, order_id: int):
    payload = request.data or {}
    return _transition_view(
        request,
        order_id,
        "order_payment_noted",
        lifecycle.record_payment_note,
        method=_text(payload, "method"),
        amount=payload.get("amount"),
    )


# ── Shipments ───────────────────────────────────────────────────────────────


@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def shipment_list(request):
    return Response({"results": shipments.list_shipments(request.user)})


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def shipment_create(request, order_id: int):
    payload = request.data or {}
    return _run(
        request,
        lambda: shipments.create_shipment(
            order_id,
            request.user,
            carrier_name=_text(payload, "carrier_name"),
            tracking_no=_text(payload, "tracking_no"),
            status=_text(payload, "status"),
        ),
        "shipment_created",
        status=201,
        order_id=order_id,
    )


@api_view(["GET", "PATCH"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def shipment_detail(request, shipment_id: int):
    if request.method == "GET":
        try:
            return Response(shipments.get_shipment(shipment_id, request.user))
        except OrderError as exc:
            return _error_response(exc, "shipment_id")

    data = request.data or {}
    errors: Dict[str, str] = {}
    version = _expected_version(request, errors)
    if errors:
        return Response({"errors": errors}, status=400)
    payload = {
        key: _text(data, key)
        for key in data.keys()
        if key not in ("status", "version_nbr")
    }
    status = _text(data, "status")
    return _run(
        request,
        lambda: shipments.update_shipment(
            shipment_id, request.user, status=status, expected_version=version, **payload
        ),
        "shipment_updated",
        not_found_key="shipment_id",
        shipment_id=shipment_id,
    )


def _shipment_action(request, shipment_id: int, event: str, operation: Callable[..., Dict[str, Any]]):
    return _run(
        request,
        lambda: operation(shipment_id, request.user),
        event,
        not_found_key="shipment_id",
        shipment_id=shipment_id,
    )


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def shipment_mark_shipped(request, shipment_id: int):
    return _shipment_action(request, shipment_id, "shipment_marked_shipped", lifecycle.mark_shipment_shipped)


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def shipment_mark_delivered(request, shipment_id: int):
    return _shipment_action(
        request, shipment_id, "shipment_marked_delivered", lifecycle.mark_shipment_delivered
    )


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def shipment_mark_delayed(request, shipment_id: int):
    return _shipment_action(request, shipment_id, "shipment_marked_delayed", shipments.mark_shipment_delayed)


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def shipment_cancel(request, shipment_id: int):
    return _shipment_action(request, shipment_id, "shipment_cancelled", shipments.cancel_shipment)


# ── Invoices ────────────────────────────────────────────────────────────────


@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def invoice_list(request):
    try:
        return Response(invoicing.list_invoices(request.user))
    except OrderError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def invoice_issue(request, order_id: int):
    raw_due = (request.data or {}).get("due_date")
    due_date = None
    if raw_due:
        errors: Dict[str, str] = {}
        due_date = _parse_date_param(raw_due, "due_date", errors)
        if errors:
            return Response({"errors": errors}, status=400)
    return _run(
        request,
        lambda: invoicing.issue_invoice(order_id, request.user, due_date=due_date),
        "invoice_issued",
        status=201,
        order_id=order_id,
    )


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def invoice_mark_paid(request, invoice_id: int):
    method = _text(request.data or {}, "method")
    return _run(
        request,
        lambda: invoicing.mark_invoice_paid(invoice_id, request.user, method=method),
        "invoice_paid",
        not_found_key="invoice_id",
        invoice_id=invoice_id,
    )


# ── Warehouse tasks ─────────────────────────────────────────────────────────


@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def task_list(request):
    try:
        results = tasks.list_tasks(request.user, status=request.query_params.get("status"))
    except OrderError as exc:
        return _error_response(exc)
    return Response({"results": results})


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def task_start(request, task_id: int):
    return _run(
        request,
        lambda: tasks.start_task(task_id, request.user),
        "task_started",
        not_found_key="task_id",
        task_id=task_id,
    )


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def task_complete(request, task_id: int):
    return _run(
        request,
        lambda: tasks.complete_task(task_id, request.user),
        "task_completed",
        not_found_key="task_id",
        task_id=task_id,
    )


# ── Payments ────────────────────────────────────────────────────────────────


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def payment_start(request, order_id: int):
    method = _text(request.data or {}, "method")
    return _run(
        request,
        lambda: payments.start_payment(order_id, request.user, method=method),
        "payment_started",
        status=201,
        order_id=order_id,
    )


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def payment_success(request, payment_id: int):
    txn_id = _text(request.data or {}, "gateway_txn_id")
    return _run(
        request,
        lambda: payments.payment_succeeded(payment_id, request.user, txn_id),
        "payment_captured",
        not_found_key="payment_id",
        payment_id=payment_id,
    )


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def payment_fail(request, payment_id: int):
    txn_id = _text(request.data or {}, "gateway_txn_id")
    return _run(
        request,
        lambda: payments.payment_failed(payment_id, request.user, txn_id),
        "payment_failed",
        not_found_key="payment_id",
        payment_id=payment_id,
    )


@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def payment_cancel(request, payment_id: int):
    return _run(
        request,
        lambda: payments.payment_cancelled(payment_id, request.user),
        "payment_cancelled",
        not_found_key="payment_id",
        payment_id=payment_id,
    )


# ── Warehouse stock ─────────────────────────────────────────────────────────


def _parse_date_param(value: Any, field_name: str, errors: Dict[str, str]):
    if value is None or value == "":
        return None
    try:
        parsed = parse_date(str(value))
    except ValueError:
        parsed = None
    if parsed is None:
        errors[field_name] = "Must be an ISO date (YYYY-MM-DD)."
    return parsed


def _optional_int_param(request, name: str, errors: Dict[str, str]) -> int | None:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    return _parse_int(raw, name, errors)


@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def inventory_list(request):
    errors: Dict[str, str] = {}
    warehouse_id = _optional_int_param(request, "warehouse_id", errors)
    if errors:
        return Response({"errors": errors}, status=400)
    try:
        results = queries.list_inventory(request.user, warehouse_id=warehouse_id)
    except OrderError as exc:
        return _error_response(exc, not_found_key="warehouse_id")
    return Response({"results": results, "count": len(results)})


@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([OrderPermission])
def inventory_transaction_list(request):
    params = request.query_params
    errors: Dict[str, str] = {}
    warehouse_id = _optional_int_param(request, "warehouse_id", errors)
    product_id = _optional_int_param(request, "product_id", errors)
    date_from = _parse_date_param(params.get("from"), "from", errors)
    date_to = _parse_date_param(params.get("to"), "to", errors)
    if errors:
        return Response({"errors": errors}, status=400)
    try:
        results = queries.list_inventory_transactions(
            request.user,
            warehouse_id=warehouse_id,
            product_id=product_id,
            txn_type=params.get("type"),
            date_from=date_from,
            date_to=date_to,
        )
    except OrderError as exc:
        return _error_response(exc, not_found_key="warehouse_id")
    return Response({"results": results, "count": len(results)})


order_list_create.required_permission = {"GET": PERM_ORDER_VIEW, "POST": PERM_ORDER_CREATE}
order_get.required_permission = PERM_ORDER_VIEW
order_status_counts.required_permission = PERM_ORDER_VIEW
order_item_add.required_permission = PERM_ORDER_EDIT_ITEMS
order_item_change.required_permission = PERM_ORDER_EDIT_ITEMS
order_submit.required_permission = PERM_ORDER_SUBMIT
order_approve.required_permission = PERM_ORDER_APPROVE
order_reject.required_permission = PERM_ORDER_REJECT
order_send_to_supplier.required_permission = PERM_ORDER_SEND
order_supplier_confirm.required_permission = PERM_ORDER_SUPPLIER_CONFIRM
order_supplier_start_processing.required_permission = PERM_ORDER_SUPPLIER_CONFIRM
order_process.required_permission = PERM_ORDER_PROCESS
order_ship.required_permission = PERM_ORDER_SHIP
order_cancel.required_permission = PERM_ORDER_CANCEL
order_pay.required_permission = PERM_ORDER_PAY
shipment_list.required_permission = PERM_ORDER_VIEW
shipment_create.required_permission = PERM_SHIPMENT_MANAGE
shipment_detail.required_permission = {
    "GET": PERM_ORDER_VIEW,
    "PATCH": [PERM_SHIPMENT_MANAGE, PERM_SHIPMENT_DELIVER],
}
shipment_mark_shipped.required_permission = PERM_SHIPMENT_MANAGE
shipment_mark_delivered.required_permission = PERM_SHIPMENT_DELIVER
shipment_mark_delayed.required_permission = PERM_SHIPMENT_MANAGE
shipment_cancel.required_permission = PERM_SHIPMENT_MANAGE
invoice_list.required_permission = PERM_INVOICE_MANAGE
invoice_issue.required_permission = PERM_INVOICE_MANAGE
invoice_mark_paid.required_permission = PERM_INVOICE_MANAGE
task_list.required_permission = PERM_TASK_WORK
task_start.required_permission = PERM_TASK_WORK
task_complete.required_permission = PERM_TASK_WORK
payment_start.required_permission = PERM_ORDER_PAY
payment_success.required_permission = PERM_ORDER_PAY
payment_fail.required_permission = PERM_ORDER_PAY
payment_cancel.required_permission = PERM_ORDER_PAY
inventory_list.required_permission = PERM_ORDER_VIEW
inventory_transaction_list.required_permission = PERM_ORDER_VIEW

for view_func in (
    order_list_create,
    order_get,
    order_status_counts,
    order_item_add,
    order_item_change,
    order_submit,
    order_approve,
    order_reject,
    order_send_to_supplier,
    order_supplier_confirm,
    order_supplier_start_processing,
    order_process,
    order_ship,
    order_cancel,
    order_pay,
    shipment_list,
    shipment_create,
    shipment_detail,
    shipment_mark_shipped,
    shipment_mark_delivered,
    shipment_mark_delayed,
    shipment_cancel,
    invoice_list,
    invoice_issue,
    invoice_mark_paid,
    task_list,
    task_start,
    task_complete,
    payment_start,
    payment_success,
    payment_fail,
    payment_cancel,
    inventory_list,
    inventory_transaction_list,
):
    if hasattr(view_func, "cls"):
        view_func.cls.required_permission = view_func.required_permission
