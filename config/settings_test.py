import os

os.environ.setdefault("DEBUG", "True")

from .settings import *  # noqa: E402,F401,F403

# File-backed so threads in TransactionTestCase share one database
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "petmall.sqlite3",  # noqa: F405
        "OPTIONS": {"timeout": 20},
        "TEST": {"NAME": BASE_DIR / "test_petmall.sqlite3"},  # noqa: F405
    }
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "petmall-default",
    },
    "idempotency": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "petmall-idempotency",
    },
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

LOGGING["handlers"]["console"]["formatter"] = "verbose"  # noqa: F405
LOGGING["loggers"]["apps"]["level"] = "WARNING"  # noqa: F405
