"""Package configuration."""

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from voucher_jose.core.jwa import ContentEncryptionAlgorithm, KeyManagementAlgorithm


class Settings(BaseSettings):
    """Settings loaded from ``VOUCHER_JOSE_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="VOUCHER_JOSE_", env_file=".env", case_sensitive=False, extra="ignore")

    log_level: str = "WARNING"

    # Defaults for RegisteredHeader.from_settings
    default_cek_algorithm: KeyManagementAlgorithm = KeyManagementAlgorithm.A256GCMKW
    default_enc_algorithm: ContentEncryptionAlgorithm = ContentEncryptionAlgorithm.A256GCM

    # Temporal claim validation
    claims_leeway_seconds: int = 0

    # Longest wire string accepted by decrypt
    max_token_length: int = 65536


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """Apply the configured log level to the package logger."""
    settings = settings or get_settings()
    logging.getLogger("voucher_jose").setLevel(settings.log_level.upper())
