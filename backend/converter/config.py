"""Application configuration. Loads from environment and .env file."""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")

# Supported upload extensions -> source mime
SOURCE_EXTENSIONS = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".png": "image/png"}

# Conversion defaults (env overrides)
DEFAULT_QUALITY = int(os.getenv("DEFAULT_QUALITY", "80"))
DEFAULT_TARGET_FORMAT = os.getenv("DEFAULT_TARGET_FORMAT", "image/webp")
DEFAULT_COLOR_PROFILE = os.getenv("DEFAULT_COLOR_PROFILE", "srgb")
MAX_SHORT_EDGE = int(os.getenv("MAX_SHORT_EDGE", "8192"))

# Concurrency: one worker process per context, fixed for the scheduler's lifetime
MAX_WORKERS = int(os.getenv("MAX_WORKERS", str(min(8, os.cpu_count() or 4))))
# spawn keeps workers free of the parent's threads and locks
MP_START_METHOD = os.getenv("MP_START_METHOD", "spawn")

# Limits (env)
MAX_IMAGE_SIZE_MB = int(os.getenv("MAX_IMAGE_SIZE_MB", "20"))
MAX_IMAGE_SIZE_BYTES = MAX_IMAGE_SIZE_MB * 1024 * 1024
# Finished tasks nobody collects are dropped after this many seconds
RESULT_TTL_SECONDS = int(os.getenv("RESULT_TTL_SECONDS", "600"))

# Server (for uvicorn)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
# CORS: comma-separated origins, e.g. "http://localhost:5173,http://127.0.0.1:5173"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",") if o.strip()]

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("converter")
