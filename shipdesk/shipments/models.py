from decimal import Decimal

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import models


class ShipmentState(models.TextChoices):
    ACCEPTED = 'accepted', 'Accepted'
    REGISTERED = 'registered', 'Registered'
    SHIPMENT_CREATED = 'shipment_created', 'Shipment Created'
    AWB_GENERATED = 'awb_generated', 'AWB Generated'
    COURIER_ASSIGNED = 'courier_assigned', 'Courier Assigned'
    PICKUP_SCHEDULED = 'pickup_scheduled', 'Pickup Scheduled'
    IN_TRANSIT = 'in_transit', 'In Transit'
    DELIVERED = 'delivered', 'Delivered'
    CANCELLED = 'cancelled', 'Cancelled'
    REJECTED = 'rejected', 'Rejected'
    FAILED = 'failed', 'Failed'


TERMINAL_STATES = (
    ShipmentState.DELIVERED,
    ShipmentState.CANCELLED,
    ShipmentState.REJECTED,
)


class ReturnState(models.TextChoices):
    REQUESTED = 'requested', 'Requested'
    APPROVED = 'approved', 'Approved'
    REJECTED = 'rejected', 'Rejected'
    REGISTERED = 'registered', 'Registered'
    AWB_GENERATED = 'awb_generated', 'AWB Generated'


class Order(models.Model):
    ORDER_STATUS = [
        ('pending', 'Pending'),
        ('accepted', 'Accepted'),
        ('rejected', 'Rejected'),
        ('processing', 'Processing'),
        ('shipped', 'Shipped'),
        ('delivered', 'Delivered'),
        ('cancelled', 'Cancelled'),
    ]

    PAYMENT_STATUS = [
        ('pending', 'Pending'),
        ('paid', 'Paid'),
        ('failed', 'Failed'),
        ('refunded', 'Refunded'),
    ]

    PAYMENT_METHODS = [
        ('prepaid', 'Prepaid'),
        ('cod', 'Cash on Delivery'),
    ]

    order_status = models.CharField(max_length=20, choices=ORDER_STATUS, default='pending', db_index=True)
    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS, default='pending')
    payment_method = models.CharField(max_length=10, choices=PAYMENT_METHODS, default='prepaid')

    # Customer/address snapshot taken at checkout, frozen once accepted
    shipping_info = models.JSONField(default=dict, blank=True)
    items = models.JSONField(default=list, blank=True)
    subtotal = models.DecimalField(max_digits=10, decimal_places=2, default=0)

    # Package
    weight = models.DecimalField(max_digits=6, decimal_places=3, default=Decimal('0.5'))
    length = models.PositiveIntegerField(default=10)
    breadth = models.PositiveIntegerField(default=10)
    height = models.PositiveIntegerField(default=5)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    SNAPSHOT_FIELDS = ('shipping_info', 'items', 'subtotal', 'weight', 'length', 'breadth', 'height')

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Order {self.pk} - {self.order_status}"

    @property
    def channel_order_id(self):
        """Identifier sent to the provider as our own order reference."""
        return f"ORD{self.pk}"

    @property
    def snapshot_frozen(self):
        return self.order_status not in ('pending', 'rejected')

    def missing_shipping_fields(self):
        info = self.shipping_info or {}
        required = ['full_name', 'address', 'city', 'state', 'pincode', 'phone']
        missing = [field for field in required if not str(info.get(field) or '').strip()]
        if not self.items:
            missing.append('items')
        if not self.weight or self.weight <= 0:
            missing.append('weight')
        return missing

    def clean(self):
        if not self.pk or not self.snapshot_frozen:
            return
        previous = Order.objects.filter(pk=self.pk).values(*self.SNAPSHOT_FIELDS).first()
        if previous is None:
            return
        changed = [name for name in self.SNAPSHOT_FIELDS if previous[name] != getattr(self, name)]
        if changed:
            raise DjangoValidationError(
                f"Customer snapshot is frozen once the order is accepted (changed: {', '.join(changed)})"
            )


class Shipment(models.Model):
    order = models.OneToOneField(Order, on_delete=models.CASCADE, related_name='shipment')
    state = models.CharField(max_length=20, choices=ShipmentState.choices, default=ShipmentState.ACCEPTED, db_index=True)
    failed_stage = models.CharField(max_length=20, choices=ShipmentState.choices, blank=True, default='')

    # Provider identifiers, filled in stage by stage
    provider_order_id = models.CharField(max_length=64, blank=True, null=True, db_index=True)
    shipment_id = models.CharField(max_length=64, blank=True, null=True, db_index=True)
    awb_code = models.CharField(max_length=100, blank=True, null=True, db_index=True)

    # Courier comes with the AWB
    courier_id = models.CharField(max_length=32, blank=True, null=True)
    courier_name = models.CharField(max_length=100, blank=True, null=True)
    courier_estimated_days = models.PositiveIntegerField(null=True, blank=True)
    freight_charge = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    cod_charge = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    pickup_location = models.CharField(max_length=100, blank=True, default='')
    pickup_date = models.DateField(null=True, blank=True)
    pickup_token = models.CharField(max_length=100, blank=True, null=True)
    picked_up_at = models.DateTimeField(null=True, blank=True)

    tracking_status = models.CharField(max_length=100, blank=True, default='')
    tracking_url = models.URLField(blank=True, null=True)
    label_url = models.URLField(blank=True, null=True)
    last_tracking_sync_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    # Last failed transition, kept for the operator
    last_error_kind = models.CharField(max_length=30, blank=True, default='')
    last_error_message = models.TextField(blank=True, default='')
    last_error_at = models.DateTimeField(null=True, blank=True)
    # Remote write whose outcome is unknown; the provider is re-read before repeating it
    unconfirmed_operation = models.CharField(max_length=30, blank=True, default='')

    # Reverse shipment after delivery
    return_state = models.CharField(max_length=20, choices=ReturnState.choices, blank=True, default='')
    return_reason = models.TextField(blank=True, default='')
    return_review_note = models.TextField(blank=True, default='')
    return_requested_at = models.DateTimeField(null=True, blank=True)
    return_provider_order_id = models.CharField(max_length=64, blank=True, null=True, db_index=True)
    return_shipment_id = models.CharField(max_length=64, blank=True, null=True)
    return_awb_code = models.CharField(max_length=100, blank=True, null=True, db_index=True)
    return_courier_name = models.CharField(max_length=100, blank=True, null=True)
    return_tracking_url = models.URLField(blank=True, null=True)

    # Bumped on every save; a stale copy cannot overwrite a newer transition
    version = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Shipment for order {self.order_id} - {self.state}"

    @property
    def rma_number(self):
        """Our reference for the reverse order at the provider."""
        return f"RET-{self.order_id}"

    @property
    def is_terminal(self):
        return self.state in TERMINAL_STATES

    @property
    def has_courier(self):
        return bool(self.courier_id or self.courier_name)

    def check_invariants(self):
        """Raise ValueError if the identifier chain is broken."""
        if self.shipment_id and not self.provider_order_id:
            raise ValueError(f"Shipment {self.shipment_id} has no provider order id")
        if self.awb_code and not self.shipment_id:
            raise ValueError(f"AWB {self.awb_code} has no shipment id")
        if self.has_courier and not self.awb_code:
            raise ValueError(f"Courier {self.courier_name or self.courier_id} assigned without an AWB")
        if self.return_state and self.state != ShipmentState.DELIVERED:
            raise ValueError(f"Return on order {self.order_id} before delivery")
        if self.return_shipment_id and not self.return_provider_order_id:
            raise ValueError(f"Return shipment {self.return_shipment_id} has no provider order id")
        if self.return_awb_code and not self.return_shipment_id:
            raise ValueError(f"Return AWB {self.return_awb_code} has no return shipment id")


class TrackingEvent(models.Model):
    shipment = models.ForeignKey(Shipment, on_delete=models.CASCADE, related_name='tracking_events')
    occurred_at = models.DateTimeField(db_index=True)
    status_text = models.CharField(max_length=255)
    status_code = models.CharField(max_length=50, blank=True, default='')
    location = models.CharField(max_length=255, blank=True, default='')
    recorded_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['occurred_at', 'id']

    def __str__(self):
        return f"{self.occurred_at:%Y-%m-%d %H:%M} {self.status_text}"


class ReconciliationIssue(models.Model):
    KINDS = [
        ('cancel_failed', 'Remote cancellation failed'),
        ('remote_cancelled', 'Cancelled at provider only'),
        ('state_mismatch', 'State mismatch'),
    ]

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='reconciliation_issues')
    kind = models.CharField(max_length=30, choices=KINDS)
    message = models.TextField()
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.get_kind_display()} on order {self.order_id}"
