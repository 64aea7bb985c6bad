from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Service settings
    service_name: str = "booking-service"
    service_version: str = "1.0.0"

    # Booking API (bookings, cancellations, gateway verification)
    booking_api_url: str = "http://booking-api:4000/api"
    booking_api_timeout: Optional[float] = None

    # Checkout settings
    currency: str = "NGN"
    service_fee_pct: float = 5.0
    hold_ttl_minutes: int = 90

    # Background persistence of verified payments
    persist_max_attempts: int = 5
    persist_backoff_seconds: float = 0.5
    persist_backoff_max_seconds: float = 30.0

    # Search settings
    search_page_size: int = 40
    search_session_ttl_minutes: int = 30
    search_session_limit: int = 1000
    index_console_url: str = "https://console.firebase.google.com/project/nesta/firestore/indexes"

    # Flipt settings
    flipt_enabled: bool = True
    flipt_url: str = "http://flipt:8080"
    flipt_namespace: str = "default"

    # OpenTelemetry settings
    telemetry_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://jaeger:4318"
    otel_exporter_otlp_metrics_endpoint: str = "http://prometheus:9090/api/v1/otlp"
    otel_exporter_otlp_metrics_headers: str = ""
    otel_service_name: str = "booking-service"

    # CORS settings
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8080", "http://webapp"]

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
