from dataclasses import dataclass
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip() or default


def parse_csv(raw: str | None) -> frozenset[str]:
    return frozenset(part.strip() for part in (raw or "").split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    app_name: str = os.getenv("APP_NAME", "paysync")
    database_url: str = os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://paysync:paysync@db:5432/paysync",
    )
    database_pool_mode: str = _env_str("DATABASE_POOL_MODE", "auto")
    database_pool_size: int = _env_int("DATABASE_POOL_SIZE", 5)
    database_pool_max_overflow: int = _env_int("DATABASE_POOL_MAX_OVERFLOW", 10)
    database_pool_timeout_seconds: int = _env_int("DATABASE_POOL_TIMEOUT_SECONDS", 30)
    log_level: str = _env_str("LOG_LEVEL", "INFO")
    log_format: str = _env_str("LOG_FORMAT", "console")
    log_requests: bool = _env_bool("LOG_REQUESTS", True)
    log_uvicorn_access: bool = _env_bool("LOG_UVICORN_ACCESS", False)
    log_request_skip_paths: str = _env_str("LOG_REQUEST_SKIP_PATHS", "/healthz")
    log_redact_fields: str = os.getenv("LOG_REDACT_FIELDS", "")
    scheduler_enabled: bool = _env_bool("SCHEDULER_ENABLED", True)
    scheduler_tick_seconds: int = _env_int("SCHEDULER_TICK_SECONDS", 60)
    scheduler_worker_count: int = _env_int("SCHEDULER_WORKER_COUNT", 1)
    sync_queue_name: str = _env_str("SYNC_QUEUE_NAME", "paysync_work")
    sync_queue_visibility_timeout_seconds: int = _env_int(
        "SYNC_QUEUE_VISIBILITY_TIMEOUT_SECONDS",
        60,
    )
    sync_queue_batch_size: int = _env_int("SYNC_QUEUE_BATCH_SIZE", 10)
    sync_dispatch_max_parallel: int = _env_int("SYNC_DISPATCH_MAX_PARALLEL", 10)
    sync_trigger_channel: str = _env_str("SYNC_TRIGGER_CHANNEL", "worker")
    sync_max_concurrent_objects: int = _env_int("SYNC_MAX_CONCURRENT_OBJECTS", 5)
    sync_stale_object_run_seconds: int = _env_int("SYNC_STALE_OBJECT_RUN_SECONDS", 300)
    sync_disabled_object_types: str = _env_str(
        "SYNC_DISABLED_OBJECT_TYPES",
        "early_fraud_warnings",
    )
    stripe_api_base_url: str = _env_str("STRIPE_API_BASE_URL", "https://api.stripe.com")
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_api_version: str = _env_str("STRIPE_API_VERSION", "2024-06-20")
    stripe_timeout_seconds: float = _env_float("STRIPE_TIMEOUT_SECONDS", 20.0)
    stripe_page_size: int = _env_int("STRIPE_PAGE_SIZE", 100)
    stripe_account_id: str = os.getenv("STRIPE_ACCOUNT_ID", "")
    webhook_secret: str = os.getenv("WEBHOOK_SECRET", "")
    webhook_tolerance_seconds: int = _env_int("WEBHOOK_TOLERANCE_SECONDS", 300)
    webhook_signature_header: str = _env_str("WEBHOOK_SIGNATURE_HEADER", "Stripe-Signature")


settings = Settings()
