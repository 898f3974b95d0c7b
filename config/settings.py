"""
Bundles – Django Settings (Infrastructure Only)
===============================================
Django serves as the framework container: the database that holds the
reservation counters, and logging configuration. The bundle engines are
plain Python and do not import Django.
"""

import os
from pathlib import Path

# ── Paths ─────────────────────────────────────────────────────
BASE_DIR = Path(__file__).resolve().parent.parent

# ── Security ──────────────────────────────────────────────────
SECRET_KEY = os.environ.get("BUNDLES_SECRET_KEY", "bundles-dev-key-replace-before-deployment")

DEBUG = os.environ.get("BUNDLES_DEBUG", "1") == "1"

ALLOWED_HOSTS = []

# ── Installed Apps ────────────────────────────────────────────
INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "core.reservation_store",
]

MIDDLEWARE = []

# ── Database ──────────────────────────────────────────────────
# SQLite for development. Production DB configured separately.
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("BUNDLES_DB_PATH", BASE_DIR / "db.sqlite3"),
    }
}

# ── Internationalization ──────────────────────────────────────
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ── Promotion Policy ──────────────────────────────────────────
# Read by engines.bundle.config.SettingsPolicyStore.
BUNDLE_PROMOTION_POLICY = {
    "site_wide_promos_affect_bundles": "Exclude",
    "max_cumulative_discount_pct": 0.5,
    "excluded_promotion_patterns": [],
    "allowed_promotion_codes": [],
    "bundle_overrides": {},
    "promotion_overrides": {},
    "log_guard_decisions": False,
}

# ── Logging ───────────────────────────────────────────────────
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
        },
    },
    "loggers": {
        "bundles": {
            "handlers": ["console"],
            "level": os.environ.get("BUNDLES_LOG_LEVEL", "INFO"),
            "propagate": True,
        },
    },
}
