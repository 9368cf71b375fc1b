"""Tests for configuration loading."""

import pydantic
import pytest

from cutroom.config import CutroomSettings, get_settings


class TestCutroomSettings:
    def test_defaults(self):
        settings = CutroomSettings()

        assert settings.database_url is None
        assert settings.openai_api_key is None
        assert settings.openai_model == "gpt-4o-mini"
        assert settings.port == 8080
        assert settings.rate_limit_enabled is True
        assert settings.media_base_url == "https://media.cutroom.local"

    def test_load_from_env(self, monkeypatch):
        monkeypatch.setenv("CUTROOM_DATABASE_URL", "postgresql://cutroom:pw@db:5432/cutroom")
        monkeypatch.setenv("CUTROOM_OPENAI_API_KEY", " sk-test ")
        monkeypatch.setenv("CUTROOM_PORT", "9090")
        monkeypatch.setenv("CUTROOM_LOG_LEVEL", "debug")

        settings = get_settings()

        assert settings.database_url == "postgresql://cutroom:pw@db:5432/cutroom"
        assert settings.openai_api_key == "sk-test"
        assert settings.port == 9090
        assert settings.log_level == "DEBUG"

    def test_blank_keys_are_unset(self, monkeypatch):
        monkeypatch.setenv("CUTROOM_PEXELS_API_KEY", "   ")
        monkeypatch.setenv("CUTROOM_DATABASE_URL", "")

        settings = CutroomSettings()

        assert settings.pexels_api_key is None
        assert settings.database_url is None

    def test_media_base_url_trailing_slash_removed(self):
        settings = CutroomSettings(media_base_url="https://cdn.example.com/")
        assert settings.media_base_url == "https://cdn.example.com"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("database_url", "mysql://db/cutroom"),
            ("port", 0),
            ("port", 70000),
            ("log_level", "verbose"),
            ("db_min_pool_size", 0),
            ("http_timeout_seconds", 0),
            ("media_base_url", "ftp://media"),
        ],
    )
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(pydantic.ValidationError):
            CutroomSettings(**{field: value})
