from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "aca-postulaciones-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_auto_migrate: bool = True
    generated_password_length: int = 12
    default_membership_fee: int = 6500
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    resend_api_key: str | None = None
    resend_api_url: str = "https://api.resend.com/emails"
    email_from: str = "ACA Chile <noreply@acachile.com>"
    email_timeout_seconds: float = 10.0
    admin_panel_url: str = "https://acachile.com/panel-admin/postulantes"
    otel_enabled: bool = True
    otel_service_name: str = "aca-postulaciones-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="ACA_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
