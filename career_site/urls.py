from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse


# Health check endpoint for load balancers and container orchestration
def health_check(request):
    return JsonResponse({'status': 'healthy', 'app': 'career_site'})


urlpatterns = [
    path('health/', health_check, name='health_check'),
    path('admin/', admin.site.urls),

    # -------------------------
    # Subscriptions, webhooks & cron
    # -------------------------
    path('api/', include('subscriptions.urls')),
]
