import hmac
import json
import logging

from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from .gateway import TrackingUpdate, parse_provider_timestamp
from .services import get_orchestrator

logger = logging.getLogger(__name__)


def verify_webhook_token(request):
    expected = settings.LOGISTICS_WEBHOOK_TOKEN
    if not expected:
        return True
    received = request.headers.get('x-api-key', '')
    return hmac.compare_digest(received, expected)


def updates_from_payload(payload):
    """
    Tracking updates carried by a provider webhook: every scan plus the current status.
    Entries without a readable timestamp are dropped.
    """
    updates = {}
    for scan in payload.get('scans') or []:
        occurred_at = parse_provider_timestamp(scan.get('date'))
        if occurred_at is None:
            continue
        label = scan.get('sr-status-label')
        status_text = label if label and label != 'NA' else (scan.get('activity') or scan.get('status') or '')
        key = (occurred_at, status_text.upper())
        updates[key] = TrackingUpdate(
            occurred_at=occurred_at,
            status_text=status_text,
            location=scan.get('location') or '',
            status_code=str(scan.get('sr-status') or scan.get('status') or ''),
        )

    current_status = payload.get('current_status')
    current_at = parse_provider_timestamp(payload.get('current_timestamp'))
    if current_status and current_at is not None:
        key = (current_at, current_status.upper())
        updates.setdefault(key, TrackingUpdate(
            occurred_at=current_at,
            status_text=current_status,
            status_code=str(payload.get('current_status_id') or ''),
        ))
    return sorted(updates.values(), key=lambda u: u.occurred_at)


def handle_tracking_webhook(payload, orchestrator):
    """
    Feed a provider tracking webhook into the shipment. Returns (success, message, http status).
    """
    awb = payload.get('awb')
    sr_order_id = payload.get('sr_order_id')
    channel_order_id = payload.get('order_id')
    logger.info(f"Tracking webhook: order {channel_order_id}, status {payload.get('current_status')}, AWB {awb}")

    if not (awb or sr_order_id or channel_order_id):
        return False, "Missing awb, sr_order_id and order_id", 400

    order_id = orchestrator.store.find_order_id(
        provider_order_id=sr_order_id, awb_code=awb, channel_order_id=channel_order_id,
    )
    if order_id is None:
        logger.error(f"Webhook for unknown order: sr_order_id={sr_order_id}, order_id={channel_order_id}, awb={awb}")
        return False, "Order not found", 404

    updates = updates_from_payload(payload)
    if not updates:
        return True, "No datable tracking updates in payload", 200

    result = orchestrator.apply_tracking(order_id, updates)
    if not result.ok:
        return False, result.message, 409 if result.error_kind == 'conflict' else 400
    applied = result.data.get('applied', 0)
    logger.info(f"Tracking webhook applied {applied} update(s) to order {order_id}, state {result.state}")
    return True, f"{applied} update(s) applied", 200


@csrf_exempt
@require_http_methods(["GET", "POST"])
def tracking_webhook(request):
    """
    Provider tracking webhook. GET answers the provider's endpoint verification.
    """
    if request.method == "GET":
        logger.info("Tracking webhook endpoint verification")
        return JsonResponse({"status": "active", "message": "Webhook endpoint is ready"}, status=200)

    if not verify_webhook_token(request):
        logger.warning("Tracking webhook rejected: bad token")
        return JsonResponse({"status": "error", "message": "Invalid security token"}, status=401)

    # Empty body is the provider's validation ping
    if not request.body or request.body.strip() in [b"", b"{}"]:
        return JsonResponse({"status": "success", "message": "Webhook validated"}, status=200)

    try:
        payload = json.loads(request.body)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in webhook: {str(e)}")
        return JsonResponse({"status": "error", "message": "Invalid JSON format"}, status=400)

    if not isinstance(payload, dict):
        logger.error(f"Webhook payload is not a JSON object: {type(payload).__name__}")
        return JsonResponse({"status": "error", "message": "Payload must be a JSON object"}, status=400)

    success, message, http_status = handle_tracking_webhook(payload, get_orchestrator())
    return JsonResponse({"status": "success" if success else "error", "message": message}, status=http_status)
