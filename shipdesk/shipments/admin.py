import logging

from django.contrib import admin, messages
from django.utils.html import format_html
from django.utils.safestring import mark_safe

from .exceptions import ShipmentError
from .models import Order, ReconciliationIssue, Shipment, ShipmentState, TrackingEvent
from .services import get_orchestrator

logger = logging.getLogger(__name__)

STATE_COLORS = {
    ShipmentState.ACCEPTED: 'lightgray',
    ShipmentState.REGISTERED: 'slategray',
    ShipmentState.SHIPMENT_CREATED: 'orange',
    ShipmentState.AWB_GENERATED: 'darkorange',
    ShipmentState.COURIER_ASSIGNED: 'teal',
    ShipmentState.PICKUP_SCHEDULED: 'blue',
    ShipmentState.IN_TRANSIT: 'skyblue',
    ShipmentState.DELIVERED: 'green',
    ShipmentState.CANCELLED: 'gray',
    ShipmentState.REJECTED: 'red',
    ShipmentState.FAILED: 'darkred',
}

BADGE = '<span style="background-color: {}; color: white; padding: 4px 8px; border-radius: 12px; font-size: 12px;">{}</span>'


def state_badge(state):
    if not state:
        return mark_safe('<span style="color: gray;">Not accepted</span>')
    state = ShipmentState(state)
    return format_html(BADGE, STATE_COLORS.get(state, 'lightgray'), state.label.upper())


class ShipmentInline(admin.StackedInline):
    model = Shipment
    extra = 0
    max_num = 1
    can_delete = False
    readonly_fields = [
        'state', 'failed_stage', 'provider_order_id', 'shipment_id', 'awb_code', 'courier_name',
        'freight_charge', 'pickup_location', 'pickup_date', 'pickup_token', 'picked_up_at',
        'tracking_status', 'tracking_url', 'label_url', 'last_tracking_sync_at', 'delivered_at',
        'cancelled_at', 'last_error_kind', 'last_error_message', 'last_error_at', 'unconfirmed_operation',
        'return_state', 'return_reason', 'return_review_note', 'return_requested_at', 'return_provider_order_id',
        'return_awb_code', 'return_courier_name', 'return_tracking_url', 'version',
    ]
    fields = readonly_fields


class TrackingEventInline(admin.TabularInline):
    model = TrackingEvent
    extra = 0
    can_delete = False
    readonly_fields = ['occurred_at', 'status_text', 'status_code', 'location', 'recorded_at']

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['id', 'customer_name', 'subtotal_display', 'order_status', 'shipment_badge',
                    'awb_display', 'courier_display', 'created_at']
    list_filter = ['order_status', 'payment_method', 'shipment__state', 'created_at']
    search_fields = ['id', 'shipment__awb_code', 'shipment__provider_order_id', 'shipment__courier_name']
    readonly_fields = ['created_at', 'updated_at', 'shipping_info_display']
    inlines = [ShipmentInline]
    list_select_related = ['shipment']

    fieldsets = (
        ('Order Information', {
            'fields': ('order_status', 'payment_status', 'payment_method', 'shipping_info_display'),
        }),
        ('Snapshot', {
            'fields': ('shipping_info', 'items', 'subtotal'),
            'classes': ('collapse',),
        }),
        ('Package', {
            'fields': ('weight', 'length', 'breadth', 'height'),
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )

    actions = [
        'accept_orders', 'reject_orders', 'register_orders', 'create_shipments', 'generate_awbs',
        'auto_assign_couriers', 'schedule_pickups', 'print_labels', 'refresh_tracking', 'cancel_orders',
        'approve_returns', 'create_return_shipments',
    ]

    def has_delete_permission(self, request, obj=None):
        return False

    def get_readonly_fields(self, request, obj=None):
        fields = list(super().get_readonly_fields(request, obj))
        if obj is not None and obj.snapshot_frozen:
            fields += list(Order.SNAPSHOT_FIELDS)
        # Once shipped through the state machine, status only moves with it
        if obj is not None and self._shipment(obj) is not None:
            fields.append('order_status')
        return fields

    def customer_name(self, obj):
        return (obj.shipping_info or {}).get('full_name', '-')
    customer_name.short_description = 'Customer'

    def subtotal_display(self, obj):
        return f"₹{obj.subtotal}"
    subtotal_display.short_description = 'Subtotal'
    subtotal_display.admin_order_field = 'subtotal'

    def _shipment(self, obj):
        return getattr(obj, 'shipment', None)

    def shipment_badge(self, obj):
        shipment = self._shipment(obj)
        return state_badge(shipment.state if shipment else None)
    shipment_badge.short_description = 'Shipment'
    shipment_badge.admin_order_field = 'shipment__state'

    def awb_display(self, obj):
        shipment = self._shipment(obj)
        return shipment.awb_code if shipment and shipment.awb_code else '-'
    awb_display.short_description = 'AWB'

    def courier_display(self, obj):
        shipment = self._shipment(obj)
        return shipment.courier_name if shipment and shipment.courier_name else '-'
    courier_display.short_description = 'Courier'

    def shipping_info_display(self, obj):
        """Display shipping info in a formatted way"""
        if not obj.shipping_info:
            return "No shipping information provided"

        info = obj.shipping_info
        fields = [
            ('Full Name', info.get('full_name')),
            ('Email', info.get('email')),
            ('Phone', info.get('phone')),
            ('Address', info.get('address')),
            ('City', info.get('city')),
            ('State', info.get('state')),
            ('Pincode', info.get('pincode')),
            ('Country', info.get('country')),
        ]
        rows = ''.join(
            format_html('<p><strong>{}:</strong> {}</p>', label, value) for label, value in fields if value
        )
        return format_html(
            "<div style='padding: 10px; background-color: #f8f9fa; border-radius: 5px; color:black'>{}</div>",
            mark_safe(rows),
        )
    shipping_info_display.short_description = 'Shipping Information'

    # Shipment actions

    def _report(self, request, label, results):
        """Summarize per-order results the same way for single and bulk runs."""
        succeeded = [r for r in results if r.ok]
        failed = [r for r in results if not r.ok]
        attention = [r for r in results if r.ok and r.needs_attention]

        self.message_user(request, f"{label}: {len(succeeded)} succeeded")
        for result in failed:
            level = messages.WARNING if result.error_kind in ('validation', 'conflict', 'transient') else messages.ERROR
            self.message_user(request, f"Order {result.order_id}: {result.message}", level=level)
        for result in attention:
            self.message_user(request, f"Order {result.order_id}: {result.message}", level=messages.WARNING)

    def _run_bulk(self, request, queryset, kind, label, **params):
        order_ids = list(queryset.values_list('id', flat=True))
        try:
            result = get_orchestrator().bulk_execute(kind, order_ids, **params)
        except ShipmentError as e:
            logger.error(f"Admin bulk {kind} failed: {str(e)}")
            self.message_user(request, f"{label}: {e}", level=messages.ERROR)
            return

        summary = result.summary
        message = f"{label}: {summary['succeeded']} succeeded"
        if summary['skipped']:
            message += f", {summary['skipped']} skipped"
        if summary['failed']:
            message += f", {summary['failed']} failed"
        if summary['not_attempted']:
            message += f", {summary['not_attempted']} not attempted"
        self.message_user(request, message, level=messages.SUCCESS if result.success else messages.WARNING)
        for item in result.items:
            if item.status == 'failed':
                self.message_user(request, f"Order {item.order_id}: {item.message}", level=messages.ERROR)

    def accept_orders(self, request, queryset):
        orchestrator = get_orchestrator()
        self._report(request, "Accept", [orchestrator.accept_order(o.id) for o in queryset])
    accept_orders.short_description = "Accept selected orders"

    def reject_orders(self, request, queryset):
        orchestrator = get_orchestrator()
        self._report(request, "Reject", [orchestrator.reject_order(o.id, 'Rejected from admin') for o in queryset])
    reject_orders.short_description = "Reject selected orders"

    def register_orders(self, request, queryset):
        self._run_bulk(request, queryset, 'register_orders', "Register with provider")
    register_orders.short_description = "Register selected orders with the provider"

    def create_shipments(self, request, queryset):
        self._run_bulk(request, queryset, 'create_shipments', "Create shipments")
    create_shipments.short_description = "Create shipments for selected orders"

    def generate_awbs(self, request, queryset):
        self._run_bulk(request, queryset, 'generate_awb', "Generate AWB")
    generate_awbs.short_description = "Generate AWB for selected orders"

    def auto_assign_couriers(self, request, queryset):
        orchestrator = get_orchestrator()
        self._report(request, "Assign cheapest courier", [orchestrator.auto_assign_courier(o.id) for o in queryset])
    auto_assign_couriers.short_description = "Assign the best-ranked courier"

    def schedule_pickups(self, request, queryset):
        self._run_bulk(request, queryset, 'schedule_pickup', "Schedule pickup")
    schedule_pickups.short_description = "Schedule pickup for today"

    def print_labels(self, request, queryset):
        self._run_bulk(request, queryset, 'print_labels', "Print labels")
    print_labels.short_description = "Generate shipping labels"

    def refresh_tracking(self, request, queryset):
        orchestrator = get_orchestrator()
        self._report(request, "Refresh tracking", [orchestrator.refresh_tracking(o.id) for o in queryset])
    refresh_tracking.short_description = "Refresh tracking from the provider"

    def cancel_orders(self, request, queryset):
        self._run_bulk(request, queryset, 'cancel_orders', "Cancel", reason='Cancelled from admin')
    cancel_orders.short_description = "Cancel selected orders"

    def approve_returns(self, request, queryset):
        orchestrator = get_orchestrator()
        self._report(request, "Approve return", [orchestrator.review_return(o.id, True) for o in queryset])
    approve_returns.short_description = "Approve requested returns"

    def create_return_shipments(self, request, queryset):
        self._run_bulk(request, queryset, 'create_return_shipments', "Create return shipments")
    create_return_shipments.short_description = "Create return shipments for approved returns"


@admin.register(Shipment)
class ShipmentAdmin(admin.ModelAdmin):
    list_display = ['order', 'state_badge', 'awb_code', 'courier_name', 'pickup_date', 'tracking_status',
                    'last_tracking_sync_at', 'last_error_kind']
    list_filter = ['state', 'return_state', 'courier_name', 'pickup_date']
    search_fields = ['order__id', 'awb_code', 'provider_order_id', 'shipment_id']
    inlines = [TrackingEventInline]

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def state_badge(self, obj):
        return state_badge(obj.state)
    state_badge.short_description = 'State'
    state_badge.admin_order_field = 'state'


@admin.register(ReconciliationIssue)
class ReconciliationIssueAdmin(admin.ModelAdmin):
    list_display = ['order', 'kind', 'message', 'resolved', 'created_at']
    list_filter = ['kind', 'resolved', 'created_at']
    search_fields = ['order__id', 'message']
    readonly_fields = ['order', 'kind', 'message', 'created_at']
    actions = ['mark_resolved']

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def mark_resolved(self, request, queryset):
        updated = queryset.update(resolved=True)
        self.message_user(request, f"Marked {updated} issue(s) as resolved")
    mark_resolved.short_description = "Mark selected issues as resolved"
