import logging

from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response

from .exceptions import (
    Conflict,
    OrderNotFound,
    ShipmentError,
    TransientProviderError,
    ValidationError,
)
from .models import Order
from .serializers import (
    AssignCourierSerializer,
    BulkOperationSerializer,
    CreateShipmentSerializer,
    GenerateAwbSerializer,
    OrderSerializer,
    ReasonSerializer,
    ReturnRequestSerializer,
    ReturnReviewSerializer,
    SchedulePickupSerializer,
)
from .services import get_orchestrator

logger = logging.getLogger(__name__)


def error_status(error: ShipmentError) -> int:
    if isinstance(error, OrderNotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, Conflict):
        return status.HTTP_409_CONFLICT
    if isinstance(error, TransientProviderError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_422_UNPROCESSABLE_ENTITY


def transition_response(result):
    if result.ok:
        return Response(result.as_dict())
    return Response(result.as_dict(), status=error_status(result.error))


@api_view(['GET'])
@permission_classes([IsAdminUser])
def order_detail(request, order_id):
    order = get_object_or_404(Order.objects.select_related('shipment'), pk=order_id)
    return Response(OrderSerializer(order).data)


@api_view(['POST'])
@permission_classes([IsAdminUser])
def accept_order(request, order_id):
    return transition_response(get_orchestrator().accept_order(order_id))


@api_view(['POST'])
@permission_classes([IsAdminUser])
def reject_order(request, order_id):
    serializer = ReasonSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    return transition_response(get_orchestrator().reject_order(order_id, serializer.validated_data['reason']))


@api_view(['POST'])
@permission_classes([IsAdminUser])
def register_order(request, order_id):
    return transition_response(get_orchestrator().register_order(order_id))


@api_view(['POST'])
@permission_classes([IsAdminUser])
def create_shipment(request, order_id):
    """
    Create the provider shipment. Registers the order first when needed.
    """
    serializer = CreateShipmentSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    result = get_orchestrator().create_shipment(
        order_id, pickup_location=serializer.validated_data.get('pickup_location'),
    )
    return transition_response(result)


@api_view(['POST'])
@permission_classes([IsAdminUser])
def generate_awb(request, order_id):
    serializer = GenerateAwbSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    result = get_orchestrator().generate_awb(order_id, courier_id=serializer.validated_data.get('courier_id'))
    return transition_response(result)


@api_view(['GET'])
@permission_classes([IsAdminUser])
def courier_options(request, order_id):
    """
    Ranked couriers for the order's route. An unserviceable route is a 200
    with status "no_service" and an empty list.
    """
    return transition_response(get_orchestrator().courier_options(order_id))


@api_view(['POST'])
@permission_classes([IsAdminUser])
def assign_courier(request, order_id):
    serializer = AssignCourierSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    orchestrator = get_orchestrator()
    if serializer.validated_data.get('auto'):
        result = orchestrator.auto_assign_courier(order_id)
    else:
        result = orchestrator.assign_courier(order_id, serializer.validated_data['courier_id'])
    return transition_response(result)


@api_view(['POST'])
@permission_classes([IsAdminUser])
def schedule_pickup(request, order_id):
    serializer = SchedulePickupSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    result = get_orchestrator().schedule_pickup(order_id, pickup_date=serializer.validated_data.get('pickup_date'))
    return transition_response(result)


@api_view(['POST'])
@permission_classes([IsAdminUser])
def print_label(request, order_id):
    return transition_response(get_orchestrator().print_label(order_id))


@api_view(['POST'])
@permission_classes([IsAdminUser])
def cancel_order(request, order_id):
    serializer = ReasonSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    return transition_response(get_orchestrator().cancel_order(order_id, serializer.validated_data['reason']))


@api_view(['POST'])
@permission_classes([IsAdminUser])
def request_return(request, order_id):
    serializer = ReturnRequestSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    return transition_response(get_orchestrator().request_return(order_id, serializer.validated_data['reason']))


@api_view(['POST'])
@permission_classes([IsAdminUser])
def review_return(request, order_id):
    serializer = ReturnReviewSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    return transition_response(get_orchestrator().review_return(order_id, data['approve'], note=data['note']))


@api_view(['POST'])
@permission_classes([IsAdminUser])
def create_return_shipment(request, order_id):
    """Register the approved return with the provider and issue its AWB."""
    return transition_response(get_orchestrator().create_return_shipment(order_id))


@api_view(['POST'])
@permission_classes([IsAdminUser])
def refresh_tracking(request, order_id):
    return transition_response(get_orchestrator().refresh_tracking(order_id))


@api_view(['POST'])
@permission_classes([IsAdminUser])
def bulk_operation(request, kind):
    """
    Run one operation over many orders. Always 200 with per-order results once
    the request itself is valid, even when every order failed.
    """
    serializer = BulkOperationSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    params = dict(serializer.validated_data)
    order_ids = params.pop('order_ids')
    deadline = params.pop('deadline', None)
    try:
        result = get_orchestrator().bulk_execute(kind, order_ids, deadline=deadline, **params)
    except ValidationError as e:
        return Response({'error': e.as_dict()}, status=status.HTTP_400_BAD_REQUEST)
    return Response(result.as_dict())


@api_view(['GET'])
@permission_classes([IsAdminUser])
def wallet_balance(request):
    force = request.query_params.get('refresh') in ('1', 'true', 'yes')
    try:
        balance = get_orchestrator().get_wallet_balance(force_refresh=force)
    except ShipmentError as e:
        logger.error(f"Wallet balance unavailable: {e}")
        return Response({'error': e.as_dict()}, status=error_status(e))
    return Response(balance.as_dict())


@api_view(['GET'])
@permission_classes([IsAdminUser])
def pickup_locations(request):
    try:
        locations = get_orchestrator().pickup_locations()
    except ShipmentError as e:
        logger.error(f"Pickup locations unavailable: {e}")
        return Response({'error': e.as_dict()}, status=error_status(e))
    return Response({
        'pickup_locations': [
            {'name': l.name, 'pincode': l.pincode, 'city': l.city, 'address': l.address}
            for l in locations
        ]
    })
