"""
Django settings for the transcoding service
"""

from pathlib import Path
import os
import tempfile
from dotenv import load_dotenv
from django.core.exceptions import ImproperlyConfigured

# -----------------------------------------------------
# Helpers
# -----------------------------------------------------
def env(name: str, default=None, *, required: bool = False):
    val = os.getenv(name, default)
    if required and (val is None or (isinstance(val, str) and val.strip() == "")):
        raise ImproperlyConfigured(f"Missing required environment variable: {name}")
    return val

def env_bool(name: str, default: bool = False) -> bool:
    return str(os.getenv(name, str(default))).lower() in {"1", "true", "yes", "on"}

def env_list(name: str, default: str = "") -> list:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]

# -----------------------------------------------------
# Paths & basics
# -----------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

DEBUG = env_bool("DEBUG", False)
SECRET_KEY = env("DJANGO_SECRET_KEY", "dev-only-secret-key-change-me", required=not DEBUG)
ALLOWED_HOSTS = env_list("ALLOWED_HOSTS", "127.0.0.1,localhost,testserver")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "transcoder",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"

# Jobs live in memory only; the database is never queried by this service
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "db.sqlite3",
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "UNAUTHENTICATED_USER": None,
}

# -----------------------------------------------------
# AWS (S3 for media, CloudWatch Logs for progress)
# -----------------------------------------------------
AWS_ACCESS_KEY_ID = env("AWS_ACCESS_KEY_ID")
AWS_SECRET_ACCESS_KEY = env("AWS_SECRET_ACCESS_KEY")
AWS_S3_REGION_NAME = env("AWS_S3_REGION_NAME", "us-east-1")
AWS_STORAGE_BUCKET_NAME = env("AWS_STORAGE_BUCKET_NAME")
AWS_S3_DEFAULT_SSE = env("AWS_S3_DEFAULT_SSE", "AES256")
AWS_S3_KMS_KEY_ID = env("AWS_S3_KMS_KEY_ID")

CLOUDWATCH_LOG_GROUP = env("CLOUDWATCH_LOG_GROUP", "/video-encoding/progress")
CLOUDWATCH_REGION_NAME = env("CLOUDWATCH_REGION_NAME")

# -----------------------------------------------------
# Transcoding
# -----------------------------------------------------
TEMP_VIDEOS_DIR = env("TEMP_VIDEOS_DIR", os.path.join(tempfile.gettempdir(), "encoding_videos"))
FFMPEG_PATH = env("FFMPEG_PATH", "")
HLS_OUTPUT_PREFIX = env("HLS_OUTPUT_PREFIX", "hls")
TRANSCODER_RENDITIONS = env_list("TRANSCODER_RENDITIONS", "360p,720p")
TRANSCODER_SEGMENT_SECONDS = int(env("TRANSCODER_SEGMENT_SECONDS", "6"))
TRANSCODER_ENCODE_TIMEOUT = int(env("TRANSCODER_ENCODE_TIMEOUT", "3600"))
TRANSCODER_MAX_WORKERS = int(env("TRANSCODER_MAX_WORKERS", "2"))
TRANSCODER_JOB_RETENTION = int(env("TRANSCODER_JOB_RETENTION", "3600"))
TRANSCODER_REAP_INTERVAL = int(env("TRANSCODER_REAP_INTERVAL", "300"))

MAIN_BACKEND_URL = env("MAIN_BACKEND_URL", "")

# -----------------------------------------------------
# Logging
# -----------------------------------------------------
LOG_LEVEL = env("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s - %(levelname)s - %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
}
