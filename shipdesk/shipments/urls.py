from django.urls import path
from . import views
from .webhook_handler import tracking_webhook

urlpatterns = [
    path('orders/<int:order_id>/', views.order_detail, name='order-detail'),
    path('orders/<int:order_id>/accept/', views.accept_order, name='accept-order'),
    path('orders/<int:order_id>/reject/', views.reject_order, name='reject-order'),
    path('orders/<int:order_id>/register/', views.register_order, name='register-order'),
    path('orders/<int:order_id>/create-shipment/', views.create_shipment, name='create-shipment'),
    path('orders/<int:order_id>/awb/', views.generate_awb, name='generate-awb'),
    path('orders/<int:order_id>/couriers/', views.courier_options, name='courier-options'),
    path('orders/<int:order_id>/assign-courier/', views.assign_courier, name='assign-courier'),
    path('orders/<int:order_id>/schedule-pickup/', views.schedule_pickup, name='schedule-pickup'),
    path('orders/<int:order_id>/label/', views.print_label, name='print-label'),
    path('orders/<int:order_id>/cancel/', views.cancel_order, name='cancel-order'),
    path('orders/<int:order_id>/tracking/refresh/', views.refresh_tracking, name='refresh-tracking'),
    path('orders/<int:order_id>/return/', views.request_return, name='request-return'),
    path('orders/<int:order_id>/return/review/', views.review_return, name='review-return'),
    path('orders/<int:order_id>/return/shipment/', views.create_return_shipment, name='create-return-shipment'),
    path('bulk/<str:kind>/', views.bulk_operation, name='bulk-operation'),
    path('wallet-balance/', views.wallet_balance, name='wallet-balance'),
    path('pickup-locations/', views.pickup_locations, name='pickup-locations'),

    # Provider webhook
    path('webhooks/tracking/', tracking_webhook, name='tracking-webhook'),
]
