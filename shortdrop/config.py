import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

BASE_DIR = Path(__file__).resolve().parent

BYTES_PER_MB = 1024 * 1024
DEFAULT_MAX_SIZE_MB = 200
DEFAULT_SHARE_TTL_SECONDS = 86400
DEFAULT_UPLOAD_SLUG_ATTEMPTS = 5
DEFAULT_SHARE_SLUG_ATTEMPTS = 10
DEFAULT_CATALOG_WORKERS = 8
DEFAULT_ALIAS_CLEANUP_MINUTES = 5
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = 100
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = 120
DEFAULT_API_RATE_LIMIT_PER_MINUTE = 200

STORAGE_BACKENDS = {"local", "s3"}
TRUE_VALUES = {"1", "true", "yes", "on"}

logger = logging.getLogger("shortdrop.config")


def _resolve_env_path(environ: Mapping[str, str], env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _coerce_positive_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        value = float("nan")
    if math.isnan(value) or math.isinf(value) or value < 1:
        logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw, default
        )
        return default
    return int(value)


def _coerce_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in TRUE_VALUES


def parse_pattern_list(raw: Optional[str]) -> List[str]:
    """Split a comma separated MIME pattern list, dropping blank entries."""

    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def load_config(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Build the normalised runtime configuration from environment variables."""

    env = os.environ if environ is None else environ

    storage_root = _resolve_env_path(env, "SHORTDROP_STORAGE_ROOT", BASE_DIR)
    data_dir = _resolve_env_path(env, "SHORTDROP_DATA_DIR", storage_root / "data")

    backend = (env.get("SHORTDROP_STORAGE_BACKEND") or "local").strip().lower()
    if backend not in STORAGE_BACKENDS:
        logger.warning(
            "Unknown storage backend %s. Falling back to local storage.", backend
        )
        backend = "local"

    max_size_mb = _coerce_positive_int(env, "MAX_SIZE_MB", DEFAULT_MAX_SIZE_MB)
    password = env.get("UPLOAD_PASSWORD") or None

    config: Dict[str, Any] = {
        "upload_password": password,
        "max_size_mb": max_size_mb,
        "max_size_bytes": max_size_mb * BYTES_PER_MB,
        "allowed_mime": parse_pattern_list(env.get("ALLOWED_MIME")),
        "blocked_mime": parse_pattern_list(env.get("BLOCKED_MIME")),
        "base_url": (env.get("BASE_URL") or "").rstrip("/"),
        "turnstile_site_key": env.get("TURNSTILE_SITE_KEY") or None,
        "turnstile_secret": env.get("TURNSTILE_SECRET") or None,
        "storage_backend": backend,
        "storage_root": storage_root,
        "data_dir": data_dir,
        "objects_dir": _resolve_env_path(
            env, "SHORTDROP_OBJECTS_DIR", storage_root / "objects"
        ),
        "logs_dir": _resolve_env_path(env, "SHORTDROP_LOGS_DIR", storage_root / "logs"),
        "metadata_db_path": data_dir / "objects.db",
        "alias_db_path": data_dir / "links.db",
        "r2_endpoint_url": env.get("R2_ENDPOINT_URL", ""),
        "r2_bucket": env.get("R2_BUCKET", ""),
        "r2_access_key_id": env.get("R2_ACCESS_KEY_ID", ""),
        "r2_secret_access_key": env.get("R2_SECRET_ACCESS_KEY", ""),
        "r2_region": env.get("R2_REGION") or "auto",
        "links_enabled": _coerce_bool(env, "SHORTDROP_LINKS_ENABLED", True),
        "upload_slug_attempts": _coerce_positive_int(
            env, "SHORTDROP_UPLOAD_SLUG_ATTEMPTS", DEFAULT_UPLOAD_SLUG_ATTEMPTS
        ),
        "share_slug_attempts": _coerce_positive_int(
            env, "SHORTDROP_SHARE_SLUG_ATTEMPTS", DEFAULT_SHARE_SLUG_ATTEMPTS
        ),
        "share_ttl_seconds": _coerce_positive_int(
            env, "SHORTDROP_SHARE_TTL_SECONDS", DEFAULT_SHARE_TTL_SECONDS
        ),
        "catalog_workers": _coerce_positive_int(
            env, "SHORTDROP_CATALOG_WORKERS", DEFAULT_CATALOG_WORKERS
        ),
        "alias_cleanup_minutes": _coerce_positive_int(
            env, "SHORTDROP_ALIAS_CLEANUP_MINUTES", DEFAULT_ALIAS_CLEANUP_MINUTES
        ),
        "upload_rate_limit_per_hour": _coerce_positive_int(
            env,
            "SHORTDROP_RATE_LIMIT_UPLOADS_PER_HOUR",
            DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR,
        ),
        "download_rate_limit_per_minute": _coerce_positive_int(
            env,
            "SHORTDROP_RATE_LIMIT_DOWNLOADS_PER_MINUTE",
            DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE,
        ),
        "api_rate_limit_per_minute": _coerce_positive_int(
            env, "SHORTDROP_RATE_LIMIT_API_PER_MINUTE", DEFAULT_API_RATE_LIMIT_PER_MINUTE
        ),
        "rate_limit_storage": env.get("SHORTDROP_RATE_LIMIT_STORAGE", "memory://"),
        "scheduler_enabled": _coerce_bool(env, "SHORTDROP_SCHEDULER_ENABLED", True),
        "log_level": (env.get("LOG_LEVEL") or "INFO").upper(),
    }

    if password is None:
        logger.warning(
            "UPLOAD_PASSWORD is not set; every authenticated endpoint will reject requests."
        )
    if config["turnstile_site_key"] and not config["turnstile_secret"]:
        logger.warning("TURNSTILE_SITE_KEY is set without TURNSTILE_SECRET; bot checks are off.")
    return config


def turnstile_enabled(config: Mapping[str, Any]) -> bool:
    return bool(config.get("turnstile_site_key") and config.get("turnstile_secret"))
