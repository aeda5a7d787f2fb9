"""
Tests for client configuration loading.
"""

import pytest

from caseflow.config import ClientConfiguration
from caseflow.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ("CASEFLOW_SERVER_URL", "CASEFLOW_TIMEOUT", "CASEFLOW_OFFLINE_MODE", "CASEFLOW_PAGE_SIZE"):
        monkeypatch.delenv(name, raising=False)


class TestClientConfiguration:
    """Test configuration sources and precedence."""

    def test_defaults_without_file(self, tmp_path):
        config = ClientConfiguration(str(tmp_path / "missing.conf"))

        assert config.get_server_url() == "http://localhost:3000/api"
        assert config.get_server_timeout() == 30.0
        assert config.get_retry_attempts() == 3
        assert config.get_max_sync_retries() == 3
        assert config.is_offline_mode() is False
        assert config.is_storage_encrypted() is True
        assert config.get_device_info() == {"platform": "python", "version": "2.1.0", "model": "unknown"}

    def test_values_from_file(self, tmp_path):
        path = tmp_path / "client.conf"
        path.write_text(
            "[server]\n"
            "url = https://cases.example.com/api/mobile/\n"
            "timeout = 10\n"
            "[sync]\n"
            "offline_mode = true\n"
            "page_size = 50\n"
            "[device]\n"
            "model = Pixel 7\n"
        )

        config = ClientConfiguration(str(path))

        assert config.get_server_url() == "https://cases.example.com/api/mobile"
        assert config.get_server_timeout() == 10.0
        assert config.is_offline_mode() is True
        assert config.get_page_size() == 50
        assert config.get_device_info()["model"] == "Pixel 7"

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "client.conf"
        path.write_text("[server]\nurl = http://file.example/api\n")
        monkeypatch.setenv("CASEFLOW_SERVER_URL", "http://env.example/api")
        monkeypatch.setenv("CASEFLOW_OFFLINE_MODE", "true")

        config = ClientConfiguration(str(path))

        assert config.get_server_url() == "http://env.example/api"
        assert config.is_offline_mode() is True

    def test_override_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CASEFLOW_PAGE_SIZE", "30")
        config = ClientConfiguration(str(tmp_path / "missing.conf"))
        config.set_override("sync.page_size", 5)

        assert config.get_page_size() == 5

    def test_invalid_number(self, tmp_path):
        path = tmp_path / "client.conf"
        path.write_text("[server]\ntimeout = soon\n")

        config = ClientConfiguration(str(path))

        with pytest.raises(ConfigurationError):
            config.get_server_timeout()

    def test_reload_picks_up_changes(self, tmp_path):
        path = tmp_path / "client.conf"
        path.write_text("[sync]\nmax_sync_retries = 2\n")
        config = ClientConfiguration(str(path))
        assert config.get_max_sync_retries() == 2

        path.write_text("[sync]\nmax_sync_retries = 7\n")
        config.reload_configuration()

        assert config.get_max_sync_retries() == 7
