"""Configuration loading and validation for static-engine."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Get the project root directory (parent of src)
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent

# Load environment variables from .env file in project root
load_dotenv(PROJECT_ROOT / ".env")


def _parse_delays(raw: str) -> list[float]:
    """Parse a comma separated list of retry delays in seconds."""
    delays = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            delays.append(float(part))
    return delays


def load_config() -> dict:
    """Load configuration from environment variables."""

    # Helper function to resolve paths relative to project root
    def resolve_path(path: str | None, default_relative: str) -> str:
        if not path:
            return str(PROJECT_ROOT / default_relative)
        if Path(path).is_absolute():
            return path
        return str(PROJECT_ROOT / path)

    config = {
        # Required API keys
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        # Model configurations
        "copy_model": os.getenv("COPY_MODEL", "gemini-2.5-flash"),
        "image_model": os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image"),
        # Storage
        "database_path": resolve_path(os.getenv("DATABASE_PATH"), ".static_engine/app.db"),
        "queue_path": resolve_path(os.getenv("QUEUE_PATH"), ".static_engine/queue.db"),
        "uploads_dir": resolve_path(os.getenv("UPLOADS_DIR"), "uploads"),
        "public_base_url": os.getenv("PUBLIC_BASE_URL", "http://localhost:3007"),
        # Cloudflare R2 (optional, local uploads are used when unset)
        "r2_account_id": os.getenv("R2_ACCOUNT_ID"),
        "r2_access_key_id": os.getenv("R2_ACCESS_KEY_ID"),
        "r2_secret_access_key": os.getenv("R2_SECRET_ACCESS_KEY"),
        "r2_bucket_name": os.getenv("R2_BUCKET_NAME", "generated-ads"),
        "r2_public_url": os.getenv("R2_PUBLIC_URL"),
        # Worker pool: bounds simultaneous external API load
        "worker_concurrency": int(os.getenv("WORKER_CONCURRENCY", "2")),
        "worker_poll_interval": float(os.getenv("WORKER_POLL_INTERVAL", "1.0")),
        # Queue retry policy
        "task_attempts": int(os.getenv("TASK_ATTEMPTS", "2")),
        "task_backoff_seconds": float(os.getenv("TASK_BACKOFF_SECONDS", "5")),
        # Image generation retry budget (per ratio)
        "image_max_attempts": int(os.getenv("IMAGE_MAX_ATTEMPTS", "4")),
        "image_retry_delays": _parse_delays(os.getenv("IMAGE_RETRY_DELAYS", "5,15,30,45")),
        "image_timeout_seconds": float(os.getenv("IMAGE_TIMEOUT_SECONDS", "180")),
        # Logging
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
        "log_json": os.getenv("LOG_JSON", "false").lower() == "true",
        # HTTP server
        "host": os.getenv("HOST", "0.0.0.0"),
        "port": int(os.getenv("PORT", "3007")),
        "cors_origins": [
            origin.strip()
            for origin in os.getenv(
                "CORS_ORIGINS", "http://localhost:3000,http://localhost:4010"
            ).split(",")
            if origin.strip()
        ],
    }

    return config


def validate_config(config: dict) -> list[str]:
    """Validate configuration and return list of errors."""
    errors = []

    if not config.get("gemini_api_key"):
        errors.append("GEMINI_API_KEY is required")

    if config.get("worker_concurrency", 0) < 1:
        errors.append("WORKER_CONCURRENCY must be at least 1")

    if config.get("task_attempts", 0) < 1:
        errors.append("TASK_ATTEMPTS must be at least 1")

    if config.get("image_max_attempts", 0) < 1:
        errors.append("IMAGE_MAX_ATTEMPTS must be at least 1")

    # R2 is all-or-nothing
    r2_keys = ("r2_account_id", "r2_access_key_id", "r2_secret_access_key")
    r2_present = [key for key in r2_keys if config.get(key)]
    if r2_present and len(r2_present) != len(r2_keys):
        errors.append(
            "R2_ACCOUNT_ID, R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY must be set together"
        )

    # Validate local paths can be created
    for key in ("database_path", "queue_path"):
        path = config.get(key)
        if path:
            try:
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            except Exception as e:
                errors.append(f"Cannot create directory for {key}: {e}")

    return errors


def is_r2_configured(config: dict) -> bool:
    """Return True when all Cloudflare R2 credentials are present."""
    return all(
        config.get(key)
        for key in ("r2_account_id", "r2_access_key_id", "r2_secret_access_key")
    )
