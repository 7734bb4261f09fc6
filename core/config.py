"""
Pydantic-based configuration for the linking queue service.

All knobs are exposed via environment variables (or a local .env file) so
the same codebase can run with the HTTP API as the consumer of the queue or
with the in-process processor, by changing env flags.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False, env_file=".env", extra="ignore", populate_by_name=True)

    # Queue storage
    queue_file: str = Field("linking_queue.json", validation_alias="QUEUE_FILE")

    # Consumption path: external worker via API, or in-process processor
    consumer: str = Field("api", validation_alias="QUEUE_CONSUMER")

    # Queue API
    api_host: str = Field("0.0.0.0", validation_alias="QUEUE_API_HOST")
    api_port: int = Field(8090, validation_alias="QUEUE_API_PORT")
    api_secret: Optional[str] = Field(None, validation_alias="QUEUE_API_SECRET")

    # Retry and scheduling
    max_retries: int = Field(3, validation_alias="MAX_RETRIES")
    check_interval_s: float = Field(300.0, validation_alias="CHECK_INTERVAL_S")
    item_delay_s: float = Field(2.0, validation_alias="ITEM_DELAY_S")
    shutdown_grace_s: float = Field(5.0, validation_alias="SHUTDOWN_GRACE_S")

    # Availability probe
    health_check_url: str = Field("http://localhost:8080/health", validation_alias="LLM_PROXY_HEALTH_URL")
    health_check_timeout_s: float = Field(5.0, validation_alias="HEALTH_CHECK_TIMEOUT_S")

    # Downstream linking service
    link_api_url: Optional[str] = Field(None, validation_alias="LOSTCRMANAGER_API_URL")
    link_api_secret: Optional[str] = Field(None, validation_alias="LOSTCRMANAGER_API_SECRET")
    link_timeout_s: float = Field(10.0, validation_alias="LINK_TIMEOUT_S")

    # Logging
    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    log_file: Optional[str] = Field(None, validation_alias="LOG_FILE")

    @field_validator("consumer")
    @classmethod
    def validate_consumer(cls, v: str) -> str:
        v = v.lower()
        if v not in {"api", "processor"}:
            raise ValueError("consumer must be api or processor")
        return v

    @field_validator("check_interval_s", "health_check_timeout_s", "link_timeout_s")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("item_delay_s", "shutdown_grace_s")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must not be negative")
        return v

    def validate_for_serve(self) -> List[str]:
        """Return the required values that are missing for `serve`."""
        errors: List[str] = []
        if self.consumer == "api" and not self.api_secret:
            errors.append("QUEUE_API_SECRET is required when QUEUE_CONSUMER=api")
        if self.consumer == "processor":
            if not self.link_api_url:
                errors.append("LOSTCRMANAGER_API_URL is required when QUEUE_CONSUMER=processor")
            if not self.link_api_secret:
                errors.append("LOSTCRMANAGER_API_SECRET is required when QUEUE_CONSUMER=processor")
        return errors


@lru_cache()
def get_settings() -> Settings:
    return Settings()
