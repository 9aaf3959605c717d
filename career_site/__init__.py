# career_site/__init__.py
from career_site.celery import app as celery_app

__all__ = ('celery_app',)
