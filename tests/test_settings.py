"""Tests for pydantic-settings configuration loading and validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.config.settings import (
    DatabaseSettings,
    GatewaySettings,
    LoggingSettings,
    Settings,
    StoreSettings,
    SyncSettings,
)


class TestStoreSettings:
    def test_app_id_is_required(self, monkeypatch) -> None:
        monkeypatch.delenv("STORE_APP_ID", raising=False)
        with pytest.raises(ValidationError):
            StoreSettings()

    def test_app_id_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("STORE_APP_ID", " tracker-prod ")
        assert StoreSettings().app_id == "tracker-prod"

    @pytest.mark.parametrize("app_id", ["", "   ", "a/b"])
    def test_invalid_app_id(self, app_id: str) -> None:
        with pytest.raises(ValidationError):
            StoreSettings(app_id=app_id)

    def test_collection_path_is_namespaced(self) -> None:
        settings = StoreSettings(app_id="demo")
        assert settings.collection_path("bugs") == "artifacts/demo/public/data/bugs"
        assert settings.collection_path("comments") == "artifacts/demo/public/data/comments"

    def test_unknown_backend_rejected(self) -> None:
        with pytest.raises(ValidationError, match="STORE_BACKEND"):
            StoreSettings(app_id="demo", backend="firestore")


class TestDatabaseSettings:
    def test_defaults(self, monkeypatch) -> None:
        for name in ("HOST", "PORT", "USER", "PASSWORD", "NAME", "SCHEMA"):
            monkeypatch.delenv(f"DATABASE_{name}", raising=False)
        settings = DatabaseSettings()
        assert settings.port == 5432
        assert settings.schema_ == "bugtracker"

    def test_schema_is_fixed(self, monkeypatch) -> None:
        monkeypatch.setenv("DATABASE_SCHEMA", "public")
        with pytest.raises(ValidationError, match="DATABASE_SCHEMA"):
            DatabaseSettings()


class TestSyncSettings:
    def test_defaults(self) -> None:
        settings = SyncSettings()
        assert settings.error_history_limit == 50
        assert settings.server_side_ordering is True

    def test_server_side_ordering_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("SYNC_SERVER_SIDE_ORDERING", "false")
        assert SyncSettings().server_side_ordering is False

    def test_notify_channel_must_be_identifier(self) -> None:
        with pytest.raises(ValidationError, match="SYNC_NOTIFY_CHANNEL"):
            SyncSettings(notify_channel="bad channel; drop")

    def test_error_history_limit_positive(self) -> None:
        with pytest.raises(ValidationError):
            SyncSettings(error_history_limit=0)


class TestLoggingSettings:
    def test_level_is_upper_cased(self, monkeypatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert LoggingSettings().level == "DEBUG"

    def test_unknown_level_rejected(self, monkeypatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "chatty")
        with pytest.raises(ValidationError, match="LOG_LEVEL"):
            LoggingSettings()

    def test_json_output_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("LOG_JSON", "true")
        assert LoggingSettings().json_output is True


class TestRootSettings:
    def test_composes_sub_settings(self, monkeypatch) -> None:
        monkeypatch.setenv("STORE_APP_ID", "demo")
        monkeypatch.setenv("GATEWAY_PORT", "8080")
        settings = Settings()
        assert settings.store.app_id == "demo"
        assert settings.gateway.port == 8080
        assert isinstance(settings.gateway, GatewaySettings)
