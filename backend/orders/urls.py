from django.urls import path

from orders import views

urlpatterns = [
    path("", views.order_list_create, name="order_list_create"),
    path("status-counts/", views.order_status_counts, name="order_status_counts"),
    path("<int:order_id>/", views.order_get, name="order_get"),
    path("<int:order_id>/items/", views.order_item_add, name="order_item_add"),
    path(
        "<int:order_id>/items/<int:product_id>/",
        views.order_item_change,
        name="order_item_change",
    ),
    path("<int:order_id>/submit/", views.order_submit, name="order_submit"),
    path("<int:order_id>/approve/", views.order_approve, name="order_approve"),
    path("<int:order_id>/reject/", views.order_reject, name="order_reject"),
    path("<int:order_id>/send/", views.order_send_to_supplier, name="order_send_to_supplier"),
    path(
        "<int:order_id>/supplier-confirm/",
        views.order_supplier_confirm,
        name="order_supplier_confirm",
    ),
    path(
        "<int:order_id>/supplier-processing/",
        views.order_supplier_start_processing,
        name="order_supplier_start_processing",
    ),
    path("<int:order_id>/process/", views.order_process, name="order_process"),
    path("<int:order_id>/ship/", views.order_ship, name="order_ship"),
    path("<int:order_id>/cancel/", views.order_cancel, name="order_cancel"),
    path("<int:order_id>/pay/", views.order_pay, name="order_pay"),
    path("<int:order_id>/shipments/", views.shipment_create, name="shipment_create"),
    path("<int:order_id>/invoice/", views.invoice_issue, name="invoice_issue"),
    path("<int:order_id>/payments/", views.payment_start, name="payment_start"),
    path("shipments/", views.shipment_list, name="shipment_list"),
    path("shipments/<int:shipment_id>/", views.shipment_detail, name="shipment_detail"),
    path(
        "shipments/<int:shipment_id>/mark-shipped/",
        views.shipment_mark_shipped,
        name="shipment_mark_shipped",
    ),
    path(
        "shipments/<int:shipment_id>/mark-delivered/",
        views.shipment_mark_delivered,
        name="shipment_mark_delivered",
    ),
    path(
        "shipments/<int:shipment_id>/mark-delayed/",
        views.shipment_mark_delayed,
        name="shipment_mark_delayed",
    ),
    path("shipments/<int:shipment_id>/cancel/", views.shipment_cancel, name="shipment_cancel"),
    path("invoices/", views.invoice_list, name="invoice_list"),
    path(
        "invoices/<int:invoice_id>/mark-paid/",
        views.invoice_mark_paid,
        name="invoice_mark_paid",
    ),
    path("inventory/", views.inventory_list, name="inventory_list"),
    path(
        "inventory/transactions/",
        views.inventory_transaction_list,
        name="inventory_transaction_list",
    ),
    path("tasks/", views.task_list, name="task_list"),
    path("tasks/<int:task_id>/start/", views.task_start, name="task_start"),
    path("tasks/<int:task_id>/complete/", views.task_complete, name="task_complete"),
    path("payments/<int:payment_id>/success/", views.payment_success, name="payment_success"),
    path("payments/<int:payment_id>/fail/", views.payment_fail, name="payment_fail"),
    path("payments/<int:payment_id>/cancel/", views.payment_cancel, name="payment_cancel"),
]
