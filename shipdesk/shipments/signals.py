from django.dispatch import Signal

# Sent after a shipment's state is persisted.
# kwargs: order_id, shipment, previous_state, state, operation
shipment_state_changed = Signal()

# Sent when local and provider state disagree. kwargs: order_id, kind, message
reconciliation_required = Signal()
