from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    app_name: str
    log_level: str
    database_url: str
    credentials_path: str | None
    table_name: str
    table_schema: str | None
    key_column: str
    natural_key_column: str
    identifier_column: str
    identifier_prefix: str
    batch_size: int
    concurrency: int
    api_base_url: str
    api_lookup_path: str | None
    api_use_mock: bool
    api_username: str | None
    api_password: str | None
    api_timeout_seconds: float
    api_identifier_field: str
    api_errors_field: str
    mock_success_rate: float
    ledger_database_url: str
    output_dir: str
    schedule_hour_utc: int
    schedule_minute_utc: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "idbackfill"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./warehouse.db"),
        credentials_path=_env_optional("CREDENTIALS_PATH"),
        table_name=os.getenv("TABLE_NAME", "records"),
        table_schema=_env_optional("TABLE_SCHEMA"),
        key_column=os.getenv("KEY_COLUMN", "uuid"),
        natural_key_column=os.getenv("NATURAL_KEY_COLUMN", "rx_data_id"),
        identifier_column=os.getenv("IDENTIFIER_COLUMN", "aspn_id"),
        identifier_prefix=os.getenv("IDENTIFIER_PREFIX", "ASPN_"),
        batch_size=int(os.getenv("BATCH_SIZE", "1000")),
        concurrency=int(os.getenv("CONCURRENCY", "10")),
        api_base_url=os.getenv("API_BASE_URL", "http://mock-api.example.com"),
        api_lookup_path=_env_optional("API_LOOKUP_PATH"),
        api_use_mock=_env_flag("API_USE_MOCK", "true"),
        api_username=_env_optional("API_USERNAME"),
        api_password=_env_optional("API_PASSWORD"),
        api_timeout_seconds=float(os.getenv("API_TIMEOUT_SECONDS", "10")),
        api_identifier_field=os.getenv("API_IDENTIFIER_FIELD", "AspnID"),
        api_errors_field=os.getenv("API_ERRORS_FIELD", "Errors"),
        mock_success_rate=float(os.getenv("MOCK_SUCCESS_RATE", "0.95")),
        ledger_database_url=os.getenv("LEDGER_DATABASE_URL", "sqlite:///./idbackfill.db"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
    )
