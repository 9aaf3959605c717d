import django.core.serializers.json
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


TIER_CHOICES = [('momentum', 'Momentum'), ('accelerate', 'Accelerate'), ('elite', 'Elite')]
BILLING_PERIOD_CHOICES = [('monthly', 'Monthly'), ('quarterly', 'Quarterly'), ('yearly', 'Annual')]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='UserSubscription',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('tier', models.CharField(blank=True, choices=TIER_CHOICES, max_length=20, null=True)),
                ('billing_period', models.CharField(blank=True, choices=BILLING_PERIOD_CHOICES, max_length=20, null=True)),
                ('status', models.CharField(blank=True, choices=[('active', 'Active'), ('past_due', 'Past Due'), ('cancelled', 'Cancelled'), ('expired', 'Expired')], db_index=True, max_length=20, null=True)),
                ('current_period_start', models.DateTimeField(blank=True, null=True)),
                ('current_period_end', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('cancellation_effective_at', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('scheduled_tier_change', models.CharField(blank=True, choices=TIER_CHOICES, max_length=20, null=True)),
                ('scheduled_billing_period_change', models.CharField(blank=True, choices=BILLING_PERIOD_CHOICES, max_length=20, null=True)),
                ('pending_tier', models.CharField(blank=True, choices=TIER_CHOICES, max_length=20, null=True)),
                ('pending_billing_period', models.CharField(blank=True, choices=BILLING_PERIOD_CHOICES, max_length=20, null=True)),
                ('grow_transaction_token', models.CharField(blank=True, default='', max_length=255)),
                ('grow_recurring_id', models.CharField(blank=True, default='', max_length=255)),
                ('grow_last_transaction_code', models.CharField(blank=True, default='', max_length=255)),
                ('morning_customer_id', models.CharField(blank=True, default='', max_length=255)),
                ('usage_applications', models.PositiveIntegerField(default=0)),
                ('usage_cvs', models.PositiveIntegerField(default=0)),
                ('usage_interviews', models.PositiveIntegerField(default=0)),
                ('usage_compensation', models.PositiveIntegerField(default=0)),
                ('usage_contracts', models.PositiveIntegerField(default=0)),
                ('usage_ai_avatar_interviews', models.PositiveIntegerField(default=0)),
                ('last_reset_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='career_subscription', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status', 'cancellation_effective_at'], name='subscriptio_status_5c1e2a_idx'),
                    models.Index(fields=['status', 'updated_at'], name='subscriptio_status_9b7d41_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='SubscriptionEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('event_type', models.CharField(choices=[('activated', 'Activated'), ('renewed', 'Renewed'), ('upgraded', 'Upgraded'), ('downgrade_scheduled', 'Downgrade Scheduled'), ('billing_period_change_scheduled', 'Billing Period Change Scheduled'), ('scheduled_change_cancelled', 'Scheduled Change Cancelled'), ('cancelled', 'Cancelled'), ('payment_failed', 'Payment Failed'), ('expired', 'Expired')], db_index=True, max_length=40)),
                ('tier', models.CharField(blank=True, choices=TIER_CHOICES, max_length=20, null=True)),
                ('billing_period', models.CharField(blank=True, choices=BILLING_PERIOD_CHOICES, max_length=20, null=True)),
                ('amount', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('currency', models.CharField(default='USD', max_length=3)),
                ('metadata', models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='subscription_events', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['user', 'event_type'], name='subscriptio_user_id_3f8a20_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='UsageMonthlySnapshot',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('month', models.DateField(help_text='First day of the month')),
                ('usage_applications', models.IntegerField(default=0)),
                ('usage_cvs', models.IntegerField(default=0)),
                ('usage_interviews', models.IntegerField(default=0)),
                ('usage_compensation', models.IntegerField(default=0)),
                ('usage_contracts', models.IntegerField(default=0)),
                ('usage_ai_avatar_interviews', models.IntegerField(default=0)),
                ('tier_at_snapshot', models.CharField(blank=True, choices=TIER_CHOICES, max_length=20, null=True)),
                ('billing_period_at_snapshot', models.CharField(blank=True, choices=BILLING_PERIOD_CHOICES, max_length=20, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='usage_snapshots', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-month'],
                'constraints': [
                    models.UniqueConstraint(fields=('user', 'month'), name='unique_usage_snapshot_per_month'),
                ],
            },
        ),
    ]
