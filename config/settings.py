import sys
from pathlib import Path

import dj_database_url
import sentry_sdk
from celery.schedules import crontab
from decouple import config, Csv
from django.core.exceptions import ImproperlyConfigured
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.django import DjangoIntegration
from sentry_sdk.integrations.redis import RedisIntegration

BASE_DIR = Path(__file__).resolve().parent.parent

UNSAFE_SECRET_KEY = "unsafe-secret-key-change-in-prod"

# ==========================================
# SECURITY & CONFIGURATION
# ==========================================
SECRET_KEY = config("SECRET_KEY", default=UNSAFE_SECRET_KEY)
DEBUG = config("DEBUG", default=False, cast=bool)
TESTING = config("TESTING", default="pytest" in sys.modules or "test" in sys.argv[1:2], cast=bool)

ALLOWED_HOSTS = config("ALLOWED_HOSTS", default="127.0.0.1,localhost", cast=Csv())

# ==========================================
# APPLICATION DEFINITION
# ==========================================
INSTALLED_APPS = [
    # Project Apps
    "apps.utils",
    "apps.catalog",
    "apps.inventory",
    "apps.orders",
]

# ==========================================
# DATABASE
# ==========================================
DB_SSL_REQUIRE = config("DB_SSL_REQUIRE", default=False, cast=bool)

DATABASES = {
    "default": dj_database_url.parse(
        config("DATABASE_URL", default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}"),
        conn_max_age=config("DB_CONN_MAX_AGE", default=600, cast=int),
        ssl_require=DB_SSL_REQUIRE,
    )
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ==========================================
# CACHE / CELERY
# ==========================================
REDIS_URL = config("REDIS_URL", default=None)

if REDIS_URL:
    CACHES = {
        "default": {
            "BACKEND": "django_redis.cache.RedisCache",
            "LOCATION": f"{REDIS_URL}/1",
            "OPTIONS": {
                "CLIENT_CLASS": "django_redis.client.DefaultClient",
                "IGNORE_EXCEPTIONS": True,
            },
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "storefront",
        }
    }

CELERY_BROKER_URL = config("CELERY_BROKER_URL", default=f"{REDIS_URL or 'redis://localhost:6379'}/0")
CELERY_RESULT_BACKEND = CELERY_BROKER_URL
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = "UTC"
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 1800
CELERY_TASK_ALWAYS_EAGER = config("CELERY_TASK_ALWAYS_EAGER", default=TESTING, cast=bool)

CELERY_BEAT_SCHEDULE = {
    "orders-replay-stalled-sagas": {
        "task": "apps.orders.tasks.replay_stalled_sagas",
        "schedule": crontab(minute="*/5"),
    },
    "nightly-low-stock-report": {
        "task": "apps.inventory.tasks.report_low_stock",
        "schedule": crontab(hour=3, minute=0),
    },
}

# ==========================================
# I18N / TZ
# ==========================================
LANGUAGE_CODE = "en-us"
TIME_ZONE = config("TIME_ZONE", default="UTC")
USE_I18N = True
USE_TZ = True

# ==========================================
# BUSINESS CONFIG
# ==========================================
PRODUCT_CACHE_TTL = config("PRODUCT_CACHE_TTL", default=300, cast=int)  # seconds
SAGA_STALL_TIMEOUT_MINUTES = config("SAGA_STALL_TIMEOUT_MINUTES", default=15, cast=int)
LOW_STOCK_REPORT_LIMIT = config("LOW_STOCK_REPORT_LIMIT", default=50, cast=int)

# ==========================================
# LOGGING
# ==========================================
SENTRY_DSN = config("SENTRY_DSN", default=None)

if SENTRY_DSN and not DEBUG:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[
            DjangoIntegration(),
            CeleryIntegration(),
            RedisIntegration(),
        ],
        traces_sample_rate=config("SENTRY_TRACES_SAMPLE_RATE", default=0.1, cast=float),
        send_default_pii=False,
    )

LOG_FORMAT = config("LOG_FORMAT", default="verbose")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "json": {
            "()": "apps.utils.logging.JSONFormatter",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json" if LOG_FORMAT == "json" else "verbose",
        },
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "apps": {
            "handlers": ["console"],
            "level": "DEBUG" if DEBUG else "INFO",
            "propagate": False,
        },
        "celery": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "": {
            "handlers": ["console"],
            "level": "WARNING",
        },
    },
}

if not DEBUG and not TESTING and SECRET_KEY == UNSAFE_SECRET_KEY:
    raise ImproperlyConfigured("Production requires a secure SECRET_KEY.")
