from pathlib import Path
import os
from celery.schedules import crontab
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent


# ==============================================================================
# SECURITY SETTINGS (ENVIRONMENT-BASED)
# ==============================================================================

# Load from .env; fall back to insecure default for development only
SECRET_KEY = os.getenv(
    'DJANGO_SECRET_KEY',
    'django-insecure-3q!n2x8v#r6w@k1m$p9c^t5z&j7h0d4s-b(e)y_u+f=a'
)

DEBUG = os.getenv('DEBUG', 'True') == 'True'

ALLOWED_HOSTS = os.getenv('ALLOWED_HOSTS', '*').split(',')

# ==============================================================================
# HTTPS/SSL SECURITY (Production only)
# ==============================================================================
if not DEBUG:
    # Force HTTPS
    SECURE_SSL_REDIRECT = os.getenv('SECURE_SSL_REDIRECT', 'True') == 'True'
    SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')

    # Secure cookies
    SESSION_COOKIE_SECURE = True
    CSRF_COOKIE_SECURE = True

    # HSTS (HTTP Strict Transport Security)
    SECURE_HSTS_SECONDS = 31536000  # 1 year
    SECURE_HSTS_INCLUDE_SUBDOMAINS = True
    SECURE_CONTENT_TYPE_NOSNIFF = True
    X_FRAME_OPTIONS = 'DENY'


# ==============================================================================
# APPLICATION CONFIGURATION
# ==============================================================================

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'django_celery_beat',  # Celery beat scheduler
    'subscriptions.apps.SubscriptionsConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'whitenoise.middleware.WhiteNoiseMiddleware',  # Serve static files
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',

    # Subscription Middleware
    'subscriptions.middleware.SubscriptionTrackingMiddleware',
]

ROOT_URLCONF = 'career_site.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'career_site.wsgi.application'


# ==============================================================================
# DATABASE CONFIGURATION
# ==============================================================================
# Supports DATABASE_URL (Railway/Heroku) or SQLite

import dj_database_url

DATABASE_URL = os.getenv('DATABASE_URL', '')

if DATABASE_URL:
    # Railway, Heroku, Render - auto-configure from DATABASE_URL
    DATABASES = {
        'default': dj_database_url.config(
            default=DATABASE_URL,
            conn_max_age=600,
            conn_health_checks=True,
        )
    }
    DATABASES['default']['ATOMIC_REQUESTS'] = True  # Each request is a transaction
else:
    # Default: SQLite for local development
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }


# ==============================================================================
# STATIC FILES
# ==============================================================================

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'
STORAGES = {
    "default": {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
    },
    "staticfiles": {
        "BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage",
    },
}


# ==============================================================================
# CELERY CONFIGURATION
# ==============================================================================

# For development: Run tasks synchronously without needing Redis/RabbitMQ
# Set to False in production when you have a proper Celery worker setup
CELERY_TASK_ALWAYS_EAGER = os.getenv('CELERY_TASK_ALWAYS_EAGER', 'True').lower() == 'true'
CELERY_TASK_EAGER_PROPAGATES = True  # Propagate exceptions in eager mode

# Celery broker (message queue) - only needed when CELERY_TASK_ALWAYS_EAGER is False
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
# Celery result backend (task results storage)
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/1')

# Celery configuration
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = 'UTC'
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 5 * 60  # 5 minutes hard limit
CELERY_TASK_SOFT_TIME_LIMIT = 4 * 60  # 4 minutes soft limit

CELERY_TASK_ROUTES = {
    'subscriptions.tasks.issue_subscription_invoice': {'queue': 'invoicing'},
}

CELERY_BEAT_SCHEDULER = 'django_celery_beat.schedulers:DatabaseScheduler'
CELERY_BEAT_SCHEDULE = {
    'process-subscription-expirations': {
        'task': 'subscriptions.tasks.process_subscription_expirations',
        'schedule': crontab(hour=0, minute=5),
    },
}


# ==============================================================================
# CACHE & SESSION CONFIGURATION
# ==============================================================================

# Use local memory cache for development (no Redis required)
# Switch to Redis in production by setting REDIS_URL environment variable
REDIS_URL = os.getenv('REDIS_URL', '')

if REDIS_URL:
    # Production: Use Redis
    CACHES = {
        'default': {
            'BACKEND': 'django_redis.cache.RedisCache',
            'LOCATION': REDIS_URL,
            'OPTIONS': {
                'CLIENT_CLASS': 'django_redis.client.DefaultClient',
            }
        }
    }
    SESSION_ENGINE = 'django.contrib.sessions.backends.cache'
    SESSION_CACHE_ALIAS = 'default'
else:
    # Development: Use local memory cache
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'unique-snowflake',
        }
    }
    # Use database sessions for development
    SESSION_ENGINE = 'django.contrib.sessions.backends.db'


# ==============================================================================
# PASSWORD VALIDATION
# ==============================================================================

AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


# ==============================================================================
# INTERNATIONALIZATION
# ==============================================================================

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True


# ==============================================================================
# LOGGING CONFIGURATION
# ==============================================================================

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {process:d} {thread:d} {message}',
            'style': '{',
        },
        'simple': {
            'format': '{levelname} {asctime} {message}',
            'style': '{',
        },
    },
    'filters': {
        'require_debug_true': {
            '()': 'django.utils.log.RequireDebugTrue',
        },
    },
    'handlers': {
        'console': {
            'level': 'DEBUG',
            'filters': ['require_debug_true'],
            'class': 'logging.StreamHandler',
            'formatter': 'simple'
        },
        'file': {
            'level': 'INFO',
            'class': 'logging.FileHandler',
            'filename': BASE_DIR / 'logs' / 'django.log',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
        },
        'celery': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
        },
        'subscriptions': {
            'handlers': ['console', 'file'],
            'level': 'DEBUG',
        },
    },
}

# Ensure logs directory exists
LOGS_DIR = BASE_DIR / 'logs'
LOGS_DIR.mkdir(exist_ok=True)


# ==============================================================================
# DEFAULT PRIMARY KEY
# ==============================================================================

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


# ==============================================================================
# SUBSCRIPTION ENFORCEMENT
# ==============================================================================

# Global kill switch. Usage is always tracked; limits are only enforced when
# this is exactly "true".
SUBSCRIPTION_ENABLED = os.getenv('SUBSCRIPTION_ENABLED', 'false') == 'true'

# Days a past_due subscription keeps access before the cron expires it
SUBSCRIPTION_GRACE_PERIOD_DAYS = int(os.getenv('SUBSCRIPTION_GRACE_PERIOD_DAYS', '3'))

# Shared secret for the daily cron endpoint (Authorization: Bearer <secret>)
CRON_SECRET = os.getenv('CRON_SECRET', '')

# Public base URL, used for payment redirect and notify URLs
APP_URL = os.getenv('APP_URL', 'http://localhost:8000')

# URLs that never create a tracking-only subscription record
SUBSCRIPTION_TRACKING_EXEMPT_URLS = [
    r'^/admin/',
    r'^/static/',
    r'^/health/',
    r'^/api/webhooks/',
    r'^/api/cron/',
]


# ==============================================================================
# PAYMENT GATEWAY (GROW)
# ==============================================================================

GROW_API_URL = os.getenv('GROW_API_URL', 'https://sandbox.meshulam.co.il/api/light/server/1.0')
GROW_USER_ID = os.getenv('GROW_USER_ID', '')
GROW_WEBHOOK_KEY = os.getenv('GROW_WEBHOOK_KEY', '')
GROW_TIMEOUT = int(os.getenv('GROW_TIMEOUT', '30'))

# One hosted payment page per tier and billing period
GROW_PAGE_CODES = {
    tier: {
        period: os.getenv(f'GROW_PAGE_CODE_{tier.upper()}_{period.upper()}', '')
        for period in ('monthly', 'quarterly', 'yearly')
    }
    for tier in ('momentum', 'accelerate', 'elite')
}


# ==============================================================================
# INVOICING (MORNING)
# ==============================================================================

MORNING_API_URL = os.getenv('MORNING_API_URL', 'https://sandbox.d.greeninvoice.co.il/api/v1')
MORNING_API_KEY_ID = os.getenv('MORNING_API_KEY_ID', '')
MORNING_API_SECRET = os.getenv('MORNING_API_SECRET', '')
MORNING_TIMEOUT = int(os.getenv('MORNING_TIMEOUT', '30'))
