from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    output_dir: str
    max_concurrency: int
    max_record_retries: int
    max_records: int
    retry_max_attempts: int
    retry_initial_delay_seconds: float
    retry_max_delay_seconds: float
    retry_backoff_factor: float
    retry_jitter: bool
    breaker_max_failures: int
    breaker_reset_timeout_seconds: float
    account_service_url: str
    linkage_service_url: str
    service_timeout_seconds: float
    stale_operation_minutes: int
    sweep_interval_minutes: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "farmer-onboarding"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./onboarding.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        max_concurrency=int(os.getenv("MAX_CONCURRENCY", "10")),
        max_record_retries=int(os.getenv("MAX_RECORD_RETRIES", "3")),
        max_records=int(os.getenv("MAX_RECORDS", "10000")),
        retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
        retry_initial_delay_seconds=float(os.getenv("RETRY_INITIAL_DELAY_SECONDS", "0.1")),
        retry_max_delay_seconds=float(os.getenv("RETRY_MAX_DELAY_SECONDS", "10")),
        retry_backoff_factor=float(os.getenv("RETRY_BACKOFF_FACTOR", "2.0")),
        retry_jitter=_env_bool("RETRY_JITTER", "true"),
        breaker_max_failures=int(os.getenv("BREAKER_MAX_FAILURES", "5")),
        breaker_reset_timeout_seconds=float(os.getenv("BREAKER_RESET_TIMEOUT_SECONDS", "30")),
        account_service_url=os.getenv("ACCOUNT_SERVICE_URL", "http://localhost:8081"),
        linkage_service_url=os.getenv("LINKAGE_SERVICE_URL", "http://localhost:8082"),
        service_timeout_seconds=float(os.getenv("SERVICE_TIMEOUT_SECONDS", "10")),
        stale_operation_minutes=int(os.getenv("STALE_OPERATION_MINUTES", "30")),
        sweep_interval_minutes=int(os.getenv("SWEEP_INTERVAL_MINUTES", "5")),
    )
