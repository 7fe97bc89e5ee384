from decimal import Decimal

import django.db.models.deletion
from django.db import migrations, models


STATE_CHOICES = [
    ('accepted', 'Accepted'),
    ('registered', 'Registered'),
    ('shipment_created', 'Shipment Created'),
    ('awb_generated', 'AWB Generated'),
    ('courier_assigned', 'Courier Assigned'),
    ('pickup_scheduled', 'Pickup Scheduled'),
    ('in_transit', 'In Transit'),
    ('delivered', 'Delivered'),
    ('cancelled', 'Cancelled'),
    ('rejected', 'Rejected'),
    ('failed', 'Failed'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_status', models.CharField(choices=[('pending', 'Pending'), ('accepted', 'Accepted'), ('rejected', 'Rejected'), ('processing', 'Processing'), ('shipped', 'Shipped'), ('delivered', 'Delivered'), ('cancelled', 'Cancelled')], db_index=True, default='pending', max_length=20)),
                ('payment_status', models.CharField(choices=[('pending', 'Pending'), ('paid', 'Paid'), ('failed', 'Failed'), ('refunded', 'Refunded')], default='pending', max_length=20)),
                ('payment_method', models.CharField(choices=[('prepaid', 'Prepaid'), ('cod', 'Cash on Delivery')], default='prepaid', max_length=10)),
                ('shipping_info', models.JSONField(blank=True, default=dict)),
                ('items', models.JSONField(blank=True, default=list)),
                ('subtotal', models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ('weight', models.DecimalField(decimal_places=3, default=Decimal('0.5'), max_digits=6)),
                ('length', models.PositiveIntegerField(default=10)),
                ('breadth', models.PositiveIntegerField(default=10)),
                ('height', models.PositiveIntegerField(default=5)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Shipment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('state', models.CharField(choices=STATE_CHOICES, db_index=True, default='accepted', max_length=20)),
                ('failed_stage', models.CharField(blank=True, choices=STATE_CHOICES, default='', max_length=20)),
                ('provider_order_id', models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ('shipment_id', models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ('awb_code', models.CharField(blank=True, db_index=True, max_length=100, null=True)),
                ('courier_id', models.CharField(blank=True, max_length=32, null=True)),
                ('courier_name', models.CharField(blank=True, max_length=100, null=True)),
                ('courier_estimated_days', models.PositiveIntegerField(blank=True, null=True)),
                ('freight_charge', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('cod_charge', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('pickup_location', models.CharField(blank=True, default='', max_length=100)),
                ('pickup_date', models.DateField(blank=True, null=True)),
                ('pickup_token', models.CharField(blank=True, max_length=100, null=True)),
                ('picked_up_at', models.DateTimeField(blank=True, null=True)),
                ('tracking_status', models.CharField(blank=True, default='', max_length=100)),
                ('tracking_url', models.URLField(blank=True, null=True)),
                ('label_url', models.URLField(blank=True, null=True)),
                ('last_tracking_sync_at', models.DateTimeField(blank=True, null=True)),
                ('delivered_at', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('last_error_kind', models.CharField(blank=True, default='', max_length=30)),
                ('last_error_message', models.TextField(blank=True, default='')),
                ('last_error_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('order', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='shipment', to='shipments.order')),
            ],
        ),
        migrations.CreateModel(
            name='TrackingEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('occurred_at', models.DateTimeField(db_index=True)),
                ('status_text', models.CharField(max_length=255)),
                ('status_code', models.CharField(blank=True, default='', max_length=50)),
                ('location', models.CharField(blank=True, default='', max_length=255)),
                ('recorded_at', models.DateTimeField(auto_now_add=True)),
                ('shipment', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='tracking_events', to='shipments.shipment')),
            ],
            options={
                'ordering': ['occurred_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='ReconciliationIssue',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('cancel_failed', 'Remote cancellation failed'), ('remote_cancelled', 'Cancelled at provider only'), ('state_mismatch', 'State mismatch')], max_length=30)),
                ('message', models.TextField()),
                ('resolved', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='reconciliation_issues', to='shipments.order')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
    ]
