"""Central environment-driven settings for the payment engine.

The process loads `settings` once at startup. Request paths never read it
directly: `EngineConfig.from_settings()` turns the gateway, tolerance and
delivery knobs into an immutable object handed to each service at
construction.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "digipay-engine"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    public_base_url: str = "http://localhost:3000"

    default_gateway_idr: str = "pakasir"
    default_gateway_usd: str = "paypal"
    backup_gateway_idr: str | None = None
    backup_gateway_usd: str | None = None
    amount_tolerance_percent: Decimal = Decimal("1")
    idr_per_usd: int = 15_000
    provider_timeout_seconds: float = 5.0
    session_lock_ttl_seconds: int = 30

    delivery_api_attempts: int = 3
    delivery_api_backoff_ms: int = 1_000
    delivery_api_max_backoff_ms: int = 30_000
    delivery_api_timeout_seconds: float = 5.0
    delivery_claim_timeout_seconds: int = 120

    ipaymu_api_key: str = ""
    ipaymu_va: str = ""
    ipaymu_api_url: str = "https://my.ipaymu.com/api/v2"
    pakasir_api_key: str = ""
    pakasir_project: str = ""
    pakasir_api_url: str = "https://app.pakasir.com/api"
    tokopay_merchant_id: str = ""
    tokopay_secret: str = ""
    tokopay_api_url: str = "https://api.tokopay.id/v1"
    paypal_client_id: str = ""
    paypal_secret: str = ""
    paypal_mode: str = "sandbox"
    paypal_webhook_id: str = ""
    site_name: str = "Digital Store"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


class EngineConfig(BaseModel):
    """Explicit engine policy threaded into services at construction."""

    model_config = ConfigDict(frozen=True)

    public_base_url: str = "http://localhost:3000"
    default_gateways: dict[str, str] = {"IDR": "pakasir", "USD": "paypal"}
    backup_gateways: dict[str, str] = {}
    amount_tolerance_percent: Decimal = Decimal("1")
    idr_per_usd: int = 15_000
    delivery_api_attempts: int = 3
    delivery_api_backoff_ms: int = 1_000
    delivery_api_max_backoff_ms: int = 30_000
    delivery_api_timeout_seconds: float = 5.0
    delivery_claim_timeout_seconds: int = 120

    @classmethod
    def from_settings(cls, source: CommonSettings) -> "EngineConfig":
        backups = {}
        if source.backup_gateway_idr:
            backups["IDR"] = source.backup_gateway_idr
        if source.backup_gateway_usd:
            backups["USD"] = source.backup_gateway_usd
        return cls(
            public_base_url=source.public_base_url.rstrip("/"),
            default_gateways={"IDR": source.default_gateway_idr, "USD": source.default_gateway_usd},
            backup_gateways=backups,
            amount_tolerance_percent=source.amount_tolerance_percent,
            idr_per_usd=source.idr_per_usd,
            delivery_api_attempts=source.delivery_api_attempts,
            delivery_api_backoff_ms=source.delivery_api_backoff_ms,
            delivery_api_max_backoff_ms=source.delivery_api_max_backoff_ms,
            delivery_api_timeout_seconds=source.delivery_api_timeout_seconds,
            delivery_claim_timeout_seconds=source.delivery_claim_timeout_seconds,
        )

    def callback_url(self, provider: str) -> str:
        return f"{self.public_base_url}/webhooks/{provider}"


settings = CommonSettings()
