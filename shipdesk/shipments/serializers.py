from rest_framework import serializers

from .models import Order, ReconciliationIssue, Shipment, TrackingEvent


class TrackingEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = TrackingEvent
        fields = ['occurred_at', 'status_text', 'status_code', 'location']


class ReconciliationIssueSerializer(serializers.ModelSerializer):
    class Meta:
        model = ReconciliationIssue
        fields = ['id', 'kind', 'message', 'resolved', 'created_at']


class ShipmentSerializer(serializers.ModelSerializer):
    state_display = serializers.CharField(source='get_state_display', read_only=True)
    rma_number = serializers.CharField(read_only=True)
    tracking_events = TrackingEventSerializer(many=True, read_only=True)

    class Meta:
        model = Shipment
        fields = [
            'state', 'state_display', 'failed_stage', 'provider_order_id', 'shipment_id', 'awb_code',
            'courier_id', 'courier_name', 'courier_estimated_days', 'freight_charge', 'cod_charge',
            'pickup_location', 'pickup_date', 'pickup_token', 'picked_up_at', 'tracking_status',
            'tracking_url', 'label_url', 'last_tracking_sync_at', 'delivered_at', 'cancelled_at',
            'last_error_kind', 'last_error_message', 'last_error_at', 'unconfirmed_operation',
            'rma_number', 'return_state', 'return_reason', 'return_review_note', 'return_requested_at',
            'return_provider_order_id', 'return_shipment_id', 'return_awb_code', 'return_courier_name',
            'return_tracking_url', 'tracking_events',
        ]


class OrderSerializer(serializers.ModelSerializer):
    shipment = ShipmentSerializer(read_only=True)
    reconciliation_issues = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_status', 'payment_status', 'payment_method', 'shipping_info', 'items',
            'subtotal', 'weight', 'length', 'breadth', 'height', 'created_at', 'shipment',
            'reconciliation_issues',
        ]

    def get_reconciliation_issues(self, obj):
        issues = obj.reconciliation_issues.filter(resolved=False)
        return ReconciliationIssueSerializer(issues, many=True).data


class CreateShipmentSerializer(serializers.Serializer):
    pickup_location = serializers.CharField(required=False, allow_blank=False, max_length=100)


class GenerateAwbSerializer(serializers.Serializer):
    courier_id = serializers.CharField(required=False, max_length=32)


class AssignCourierSerializer(serializers.Serializer):
    courier_id = serializers.CharField(required=False, max_length=32)
    auto = serializers.BooleanField(required=False, default=False)

    def validate(self, data):
        if not data.get('courier_id') and not data.get('auto'):
            raise serializers.ValidationError("Provide courier_id or set auto to true")
        return data


class SchedulePickupSerializer(serializers.Serializer):
    pickup_date = serializers.DateField(required=False)


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='', max_length=500)


class ReturnRequestSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500)


class ReturnReviewSerializer(serializers.Serializer):
    approve = serializers.BooleanField()
    note = serializers.CharField(required=False, allow_blank=True, default='', max_length=500)


class BulkOperationSerializer(serializers.Serializer):
    order_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), allow_empty=False)
    pickup_location = serializers.CharField(required=False, max_length=100)
    courier_id = serializers.CharField(required=False, max_length=32)
    pickup_date = serializers.DateField(required=False)
    reason = serializers.CharField(required=False, allow_blank=True, max_length=500)
    deadline = serializers.FloatField(required=False, min_value=0.1)
