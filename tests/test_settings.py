"""Tests for YAML settings loading."""
import pytest

from config.settings import Settings, get_settings, load_settings


@pytest.fixture
def settings_file(tmp_path):
    def _write(text: str):
        path = tmp_path / "settings.yaml"
        path.write_text(text)
        return str(path)
    return _write


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("EVOLUTION_API_URL", raising=False)
        monkeypatch.delenv("EVOLUTION_API_KEY", raising=False)
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings.database.store_backend == "memory"
        assert settings.transport.provider == "evolution"
        assert settings.transport.base_url == ""
        assert settings.sweeper.retry_delay_minutes == 5
        assert settings.auto_close.utc_offset_hours == -3

    def test_env_substitution(self, settings_file, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/shop")
        monkeypatch.setenv("EVOLUTION_API_URL", "https://evo.example.com")
        monkeypatch.setenv("EVOLUTION_API_KEY", "secret")
        path = settings_file(
            "database:\n"
            "  url: \"${DATABASE_URL}\"\n"
            "  store_backend: sql\n"
            "transport:\n"
            "  base_url: \"${EVOLUTION_API_URL}\"\n"
            "  api_key: \"${EVOLUTION_API_KEY}\"\n"
            "  timeout_seconds: 10\n"
            "sweeper:\n"
            "  batch_size: 20\n"
            "  country_code: 55\n"
        )

        settings = load_settings(path)

        assert settings.database.url == "postgresql://u:p@db:5432/shop"
        assert settings.database.store_backend == "sql"
        assert settings.transport.base_url == "https://evo.example.com"
        assert settings.transport.api_key == "secret"
        assert settings.transport.timeout_seconds == 10.0
        assert settings.sweeper.batch_size == 20
        assert settings.sweeper.country_code == "55"

    def test_unresolved_placeholder_falls_back_to_environment(self, settings_file, monkeypatch):
        monkeypatch.delenv("EVO_URL_UNSET", raising=False)
        monkeypatch.setenv("EVOLUTION_API_URL", "https://fallback.example.com")
        path = settings_file("transport:\n  base_url: \"${EVO_URL_UNSET}\"\n")
        assert load_settings(path).transport.base_url == "https://fallback.example.com"

    def test_auto_close_section(self, settings_file):
        path = settings_file("auto_close:\n  utc_offset_hours: 0\n  business_start: \"09:00\"\n")
        defaults = load_settings(path).auto_close
        assert defaults.utc_offset_hours == 0
        assert defaults.business_start == "09:00"
        assert defaults.business_end == "20:00"

    def test_empty_file(self, settings_file):
        assert isinstance(load_settings(settings_file("")), Settings)

    def test_get_settings_returns_cached(self, settings_file):
        loaded = load_settings(settings_file("app_name: Loja\n"))
        assert get_settings() is loaded
        assert get_settings().app_name == "Loja"
