# meshplane/config.py
"""
Application Configuration
Uses pydantic-settings for environment variable management
"""

import logging
from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables
    Create a .env file for local development
    """

    # === Application ===
    APP_NAME: str = "Meshplane Control Plane"
    APP_VERSION: str = "1.0.0"
    ENV: str = "development"  # development, staging, production
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # === API ===
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    API_PREFIX: str = "/api/v1"

    # === Database ===
    DATABASE_URL: str = "sqlite:///./meshplane.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # === Security ===
    ADMIN_SECRET: str = "change-me-admin-secret"

    # Private key encryption (AES-256-GCM, Scrypt-derived key)
    KEY_ENCRYPTION_SECRET: str = "change-me-in-production-use-secrets-manager"
    KEY_ENCRYPTION_SALT: str = "meshplane-key-salt"

    # === Remote execution (SSH) ===
    SSH_USER: str = "root"
    SSH_PORT: int = 22
    SSH_KEY_PATH: Optional[str] = None
    SSH_CONNECT_TIMEOUT: int = 10  # seconds
    REMOTE_COMMAND_TIMEOUT: int = 60  # seconds, per command

    # === WireGuard ===
    WG_CONFIG_DIR: str = "/etc/wireguard"
    DEFAULT_LISTEN_PORT: int = 51820
    PERSISTENT_KEEPALIVE: int = 25
    GATEWAY_EGRESS_INTERFACE: Optional[str] = None  # NAT uplink of gateway hubs, detected when unset

    # === Monitoring ===
    MONITOR_INTERVAL: int = 30  # seconds between iterations
    MONITOR_ALERT_THRESHOLD: int = 300  # seconds without handshake

    # === Key rotation ===
    KEY_BACKUP_DIR: Optional[str] = None  # JSON key backups, disabled when unset

    # === IPAM ===
    ALLOCATION_RETRY_ATTEMPTS: int = 3

    # === Logging & Audit ===
    ENABLE_AUDIT_LOG: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="forbid",
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Only accept standard logging level names"""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.ENV.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings instance
    Use this to get settings throughout the application
    """
    return Settings()


settings = get_settings()
