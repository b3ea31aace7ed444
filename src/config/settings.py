from __future__ import annotations

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.constants import COLLECTION_PATH_TEMPLATE, DB_SCHEMA, DEFAULT_NOTIFY_CHANNEL

# Load .env once at module import; all BaseSettings subclasses will see the env vars
load_dotenv()


class StoreSettings(BaseSettings):
    """Document store connection settings. Env vars prefixed with STORE_.

    Replaces the ambient app identity the browser client used to read from
    injected globals: the app id is required and namespaces every collection.
    """

    model_config = SettingsConfigDict(env_prefix="STORE_")

    app_id: str  # required, fail fast if missing
    backend: str = "memory"

    @field_validator("app_id")
    @classmethod
    def _validate_app_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("STORE_APP_ID must be a non-empty string")
        if "/" in v:
            raise ValueError(f"STORE_APP_ID must not contain '/' (got '{v}')")
        return v

    @field_validator("backend")
    @classmethod
    def _validate_backend(cls, v: str) -> str:
        allowed = {"memory", "postgres"}
        if v not in allowed:
            msg = f"STORE_BACKEND must be one of {allowed} (got '{v}')"
            raise ValueError(msg)
        return v

    def collection_path(self, collection: str) -> str:
        """Physical collection name for a logical collection ('bugs', 'comments')."""
        return COLLECTION_PATH_TEMPLATE.format(app_id=self.app_id, collection=collection)


class DatabaseSettings(BaseSettings):
    """PostgreSQL connection settings. Env vars prefixed with DATABASE_."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "bugtracker"
    schema_: str = Field(DB_SCHEMA, validation_alias="DATABASE_SCHEMA")

    @field_validator("schema_")
    @classmethod
    def _validate_schema(cls, v: str) -> str:
        if v != DB_SCHEMA:
            msg = f"DATABASE_SCHEMA must be '{DB_SCHEMA}' (got '{v}')"
            raise ValueError(msg)
        return v


class SyncSettings(BaseSettings):
    """Replica synchronization settings. Env vars prefixed with SYNC_."""

    model_config = SettingsConfigDict(env_prefix="SYNC_")

    error_history_limit: int = Field(50, gt=0, le=10_000)
    # Send order-by with the comment query; the replica is sorted client-side either way
    server_side_ordering: bool = True
    notify_channel: str = DEFAULT_NOTIFY_CHANNEL

    @field_validator("notify_channel")
    @classmethod
    def _validate_notify_channel(cls, v: str) -> str:
        if not v.isidentifier():
            msg = f"SYNC_NOTIFY_CHANNEL must be a plain identifier (got '{v}')"
            raise ValueError(msg)
        return v


class GatewaySettings(BaseSettings):
    """Gateway server settings. Env vars prefixed with GATEWAY_."""

    model_config = SettingsConfigDict(env_prefix="GATEWAY_")

    host: str = "0.0.0.0"
    port: int = 19790
    max_subscriptions_per_connection: int = Field(32, gt=0, le=1024)


class LoggingSettings(BaseSettings):
    """Logging settings. Env vars prefixed with LOG_."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = "INFO"
    json_output: bool = Field(False, validation_alias="LOG_JSON")

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v = v.upper()
        if v not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed} (got '{v}')")
        return v


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    store: StoreSettings = Field(default_factory=StoreSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on missing required fields."""
    return Settings()
