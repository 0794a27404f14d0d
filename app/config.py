from functools import lru_cache
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = Field(default="Payment Orchestrator")
    log_level: str = Field(default="INFO")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)

    providers_path: str = Field(default="./providers.json", description="Provider config JSON file")
    routing_priority: List[str] = Field(
        default=["STRIPE", "ADYEN", "MASTERCARD", "PAYPAL"],
        description="AUTO routing order, first selectable provider wins",
    )
    demo_fallback_enabled: bool = Field(
        default=True, description="Route AUTO to DEMO when no provider is selectable"
    )

    idempotency_ttl_seconds: int = Field(default=86400)
    idempotency_wait_seconds: float = Field(
        default=10.0, description="How long a duplicate request waits for the in-flight creation"
    )

    provider_timeout_seconds: float = Field(default=10.0)
    provider_endpoints: Dict[str, str] = Field(
        default_factory=dict, description="Provider name -> session endpoint URL"
    )
    max_attempts_per_chain: int = Field(default=3)

    circuit_failure_threshold: int = Field(default=5)
    circuit_reset_seconds: float = Field(default=60.0)

    frontend_base_url: str = Field(default="http://localhost:3000")

    merchant_api_keys: Dict[str, str] = Field(
        default_factory=dict, description="API key -> merchant id"
    )
    admin_token: str = Field(default="dev-admin-token-change")

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
