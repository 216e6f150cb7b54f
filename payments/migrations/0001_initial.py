import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('school_id', models.CharField(db_index=True, max_length=64)),
                ('trustee_id', models.CharField(blank=True, max_length=64, null=True)),
                ('student_name', models.CharField(max_length=128)),
                ('student_id', models.CharField(max_length=64)),
                ('student_email', models.EmailField(max_length=254)),
                ('gateway_name', models.CharField(max_length=64)),
                ('custom_order_id', models.CharField(max_length=64, unique=True)),
                ('collect_request_id', models.CharField(blank=True, max_length=64, null=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('callback_url', models.URLField(max_length=512)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('success', 'Success'), ('failed', 'Failed'), ('cancelled', 'Cancelled')], db_index=True, default='pending', max_length=16)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'constraints': [models.UniqueConstraint(condition=models.Q(('collect_request_id__isnull', False)), fields=('collect_request_id',), name='order_collect_request_id_sparse_unique')],
            },
        ),
        migrations.CreateModel(
            name='OrderStatus',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('collect_id', models.CharField(max_length=64, unique=True)),
                ('collect_request_id', models.CharField(blank=True, max_length=64, null=True)),
                ('order_amount', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('transaction_amount', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('payment_mode', models.CharField(blank=True, default='', max_length=64)),
                ('payment_details', models.JSONField(blank=True, null=True)),
                ('bank_reference', models.CharField(blank=True, default='', max_length=128)),
                ('payment_message', models.TextField(blank=True, default='')),
                ('status', models.CharField(db_index=True, default='pending', max_length=32)),
                ('error_message', models.TextField(blank=True, default='')),
                ('payment_time', models.DateTimeField(default=django.utils.timezone.now)),
                ('gateway', models.CharField(default='Edviron', max_length=64)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name_plural': 'order statuses',
                'constraints': [models.UniqueConstraint(condition=models.Q(('collect_request_id__isnull', False)), fields=('collect_request_id',), name='orderstatus_collect_request_id_sparse_unique')],
            },
        ),
        migrations.CreateModel(
            name='WebhookLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_id', models.CharField(db_index=True, default='unknown', max_length=64)),
                ('status', models.IntegerField(default=0)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('processed', models.BooleanField(db_index=True, default=False)),
                ('error_message', models.TextField(blank=True, default='')),
                ('received_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'ordering': ['-received_at'],
            },
        ),
    ]
