"""
ASGI config for career_site project.

It exposes the ASGI callable as a module-level variable named ``application``.
"""

import os

from django.core.asgi import get_asgi_application

# Celery setup
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'career_site.settings')
django_asgi_app = get_asgi_application()

from career_site import celery as celery_app

# Initialize Celery app
celery_app.app

application = django_asgi_app
