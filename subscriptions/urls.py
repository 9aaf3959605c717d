# subscriptions/urls.py
"""
URL patterns for subscriptions app (mounted under /api/).
"""

from django.urls import path
from subscriptions import views

urlpatterns = [
    # Subscription management
    path('subscription/status/', views.subscription_status, name='subscription_status'),
    path('subscription/initiate/', views.initiate_subscription, name='subscription_initiate'),
    path('subscription/cancel/', views.cancel_subscription_view, name='subscription_cancel'),
    path('subscription/change-plan/', views.change_plan, name='subscription_change_plan'),

    # Usage metering
    path('subscription/check-access/', views.check_access, name='subscription_check_access'),
    path('subscription/check-limit/', views.check_limit, name='subscription_check_limit'),
    path('subscription/increment-usage/', views.increment_usage, name='subscription_increment_usage'),

    # Recommendation
    path('subscription/recommendation/', views.recommendation, name='subscription_recommendation'),
    path('subscription/usage-trends/', views.usage_trends, name='subscription_usage_trends'),

    # Payment provider
    path('webhooks/grow/', views.grow_webhook, name='grow_webhook'),

    # Scheduled jobs
    path('cron/process-subscriptions/', views.process_subscriptions_cron, name='cron_process_subscriptions'),
]
