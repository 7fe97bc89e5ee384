from django.db import migrations, models


RETURN_STATE_CHOICES = [
    ('requested', 'Requested'),
    ('approved', 'Approved'),
    ('rejected', 'Rejected'),
    ('registered', 'Registered'),
    ('awb_generated', 'AWB Generated'),
]


class Migration(migrations.Migration):

    dependencies = [
        ('shipments', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='shipment',
            name='version',
            field=models.PositiveIntegerField(default=0),
        ),
        migrations.AddField(
            model_name='shipment',
            name='unconfirmed_operation',
            field=models.CharField(blank=True, default='', max_length=30),
        ),
        migrations.AddField(
            model_name='shipment',
            name='return_state',
            field=models.CharField(blank=True, choices=RETURN_STATE_CHOICES, default='', max_length=20),
        ),
        migrations.AddField(
            model_name='shipment',
            name='return_reason',
            field=models.TextField(blank=True, default=''),
        ),
        migrations.AddField(
            model_name='shipment',
            name='return_review_note',
            field=models.TextField(blank=True, default=''),
        ),
        migrations.AddField(
            model_name='shipment',
            name='return_requested_at',
            field=models.DateTimeField(blank=True, null=True),
        ),
        migrations.AddField(
            model_name='shipment',
            name='return_provider_order_id',
            field=models.CharField(blank=True, db_index=True, max_length=64, null=True),
        ),
        migrations.AddField(
            model_name='shipment',
            name='return_shipment_id',
            field=models.CharField(blank=True, max_length=64, null=True),
        ),
        migrations.AddField(
            model_name='shipment',
            name='return_awb_code',
            field=models.CharField(blank=True, db_index=True, max_length=100, null=True),
        ),
        migrations.AddField(
            model_name='shipment',
            name='return_courier_name',
            field=models.CharField(blank=True, max_length=100, null=True),
        ),
        migrations.AddField(
            model_name='shipment',
            name='return_tracking_url',
            field=models.URLField(blank=True, null=True),
        ),
    ]
