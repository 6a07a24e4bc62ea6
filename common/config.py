import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

# Storage mode: local / gcp / azure
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")

GCS_BUCKET = os.getenv("GCS_BUCKET")
AZURE_CONN_STR = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
AZURE_CONTAINER = os.getenv("AZURE_CONTAINER")

LOCAL_STAGING_DIR = BASE_DIR / "data" / "staging"
LOCAL_OUTPUT_DIR = BASE_DIR / "data" / "output"

# Queue admission
MAX_PENDING = int(os.getenv("MAX_PENDING", "5"))
DEFAULT_QUALITY = 80

# Files above this size go through staging instead of /api/convert
LARGE_FILE_THRESHOLD = 4 * 1024 * 1024
STAGING_MAX_BYTES = 100 * 1024 * 1024
STAGING_EXPIRY_SECONDS = 600
OUTPUT_URL_EXPIRY_SECONDS = 3600

LOCAL_MODE_PASSWORD = os.getenv("LOCAL_MODE_PASSWORD")
LOCAL_MODE_COOKIE = "local_mode"
LOCAL_MODE_MAX_AGE = 60 * 60 * 24
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

# Where the worker finds the API, and where the API says local files live
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", API_BASE_URL)
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "60"))

PREVIEW_SIZE = 128

# Ensure dirs exist (for local mode)
LOCAL_STAGING_DIR.mkdir(parents=True, exist_ok=True)
LOCAL_OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
