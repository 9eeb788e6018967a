"""Django settings for the shop web project.

Every value can be overridden from the environment. Defaults are suitable for
local development: SQLite storage, in-process stubs for the inventory service,
payment gateway and ERP, and JSON logs on stdout.
"""

import json
import os
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "rest_framework",
    "apps.orders",
    "apps.payments",
    "apps.erp",
]

MIDDLEWARE = [
    "shop.middleware.RequestIdMiddleware",
    "shop.middleware.ApiSizeLimitMiddleware",
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

ROOT_URLCONF = "shop.urls"
WSGI_APPLICATION = "shop.wsgi.application"

if os.getenv("DB_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.getenv("DB_HOST"),
            "PORT": os.getenv("DB_PORT", "5432"),
            "NAME": os.getenv("DB_NAME", "shop"),
            "USER": os.getenv("DB_USER", "shop_user"),
            "PASSWORD": os.getenv("DB_PASSWORD", "shop-pass"),
            "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = os.getenv("TIME_ZONE", "Asia/Tehran")

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.IsAuthenticated"],
    "EXCEPTION_HANDLER": "shop.exceptions.exception_handler",
    "DEFAULT_THROTTLE_RATES": {
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "120/min"),
        "orders_create": os.getenv("THROTTLE_ORDERS_CREATE", "30/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "240/min"),
        "payments": os.getenv("THROTTLE_PAYMENTS", "60/min"),
    },
}

# ---- Downstream HTTP (inventory service) ----
USE_HTTP_ADAPTERS = _env_bool("USE_HTTP_ADAPTERS", False)
INVENTORY_BASE_URL = os.getenv("INVENTORY_BASE_URL", "http://inventory:9001")
HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "5"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# Largest request body accepted under /api/
API_MAX_BYTES = int(os.getenv("API_MAX_BYTES", str(1024 * 1024)))

# ---- Pricing ----
# Shipping rates per method, in Tomans. JSON override: {"standard": 15000, ...}
SHIPPING_RATES = json.loads(
    os.getenv("SHIPPING_RATES", '{"standard": 15000, "express": 30000, "pickup": 15000}')
)
ORDER_TAX_RATE = os.getenv("ORDER_TAX_RATE", "0.09")
INVOICE_TAX_RATE = os.getenv("INVOICE_TAX_RATE", "0.09")
LOYALTY_POINT_UNIT = int(os.getenv("LOYALTY_POINT_UNIT", "10000"))

# ---- Payment gateway (Zarinpal) ----
ZARINPAL_MERCHANT_ID = os.getenv("ZARINPAL_MERCHANT_ID", "")
ZARINPAL_CALLBACK_URL = os.getenv("ZARINPAL_CALLBACK_URL", "http://localhost:8000/api/payments")
ZARINPAL_SANDBOX = _env_bool("ZARINPAL_SANDBOX", True)
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3001")

# ---- ERP (Holoo) ----
HOLOO_ENABLED = _env_bool("HOLOO_ENABLED", False)
HOLOO_API_URL = os.getenv("HOLOO_API_URL", "https://api.holoo.app/v1")
HOLOO_USERNAME = os.getenv("HOLOO_USERNAME", "")
HOLOO_PASSWORD = os.getenv("HOLOO_PASSWORD", "")
HOLOO_DBNAME = os.getenv("HOLOO_DBNAME", "")
HOLOO_TOKEN_LIFESPAN_SECS = int(os.getenv("HOLOO_TOKEN_LIFESPAN_SECS", str(25 * 60)))
HOLOO_SYNC_INTERVAL_SECS = int(os.getenv("HOLOO_SYNC_INTERVAL_SECS", str(60 * 60)))
HOLOO_WEBHOOK_API_KEY = os.getenv("HOLOO_WEBHOOK_API_KEY", "")
ERP_SYNC_MAX_ATTEMPTS = int(os.getenv("ERP_SYNC_MAX_ATTEMPTS", "3"))
ERP_SYNC_WORKERS = int(os.getenv("ERP_SYNC_WORKERS", "2"))
# "thread" runs syncs on a worker pool after commit; "inline" runs them in-process.
ERP_SYNC_DISPATCH = os.getenv("ERP_SYNC_DISPATCH", "thread")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_id": {"()": "shop.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_id"],
        },
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO")},
    "loggers": {
        "django.request": {"level": "WARNING"},
        "httpx": {"level": "WARNING"},
    },
}
