from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List
from dotenv import load_dotenv, find_dotenv

# Load environment variables from .env file (searching parent directories)
load_dotenv(find_dotenv())


class Settings(BaseSettings):
    """
    Settings for the registry client.

    Every field can be overridden from the environment or a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ═══════════════════════════════════════════════════════════════════
    # Application Settings
    # ═══════════════════════════════════════════════════════════════════
    PROJECT_NAME: str = "zkregistry"
    ENVIRONMENT: str = Field(default="development", description="development, staging, production")
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # ═══════════════════════════════════════════════════════════════════
    # Registry Settings
    # ═══════════════════════════════════════════════════════════════════
    REGISTRY_NAME: str = "registry"
    REGISTRY_BACKEND: str = Field(default="zookeeper", description="zookeeper or memory")
    REGISTRY_DELIVERY_POLICY: str = Field(default="blocking", description="blocking or drop")

    # ═══════════════════════════════════════════════════════════════════
    # ZooKeeper Settings
    # ═══════════════════════════════════════════════════════════════════
    ZK_HOSTS: str = "127.0.0.1:2181"
    ZK_SESSION_TIMEOUT: int = 15  # seconds
    ZK_FATAL_ON_SESSION_LOSS: bool = True

    @property
    def hosts_list(self) -> List[str]:
        """Parse ZK_HOSTS into list"""
        return [host.strip() for host in self.ZK_HOSTS.split(",") if host.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator('REGISTRY_BACKEND')
    @classmethod
    def validate_backend(cls, v):
        v = v.lower()
        if v not in ("zookeeper", "memory"):
            raise ValueError(f"REGISTRY_BACKEND must be 'zookeeper' or 'memory', got {v!r}")
        return v

    @field_validator('REGISTRY_DELIVERY_POLICY')
    @classmethod
    def validate_delivery_policy(cls, v):
        v = v.lower()
        if v not in ("blocking", "drop"):
            raise ValueError(f"REGISTRY_DELIVERY_POLICY must be 'blocking' or 'drop', got {v!r}")
        return v

    @field_validator('ZK_SESSION_TIMEOUT')
    @classmethod
    def validate_session_timeout(cls, v):
        if v <= 0:
            raise ValueError("ZK_SESSION_TIMEOUT must be a positive number of seconds")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
