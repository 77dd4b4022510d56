"""Tests for settings parsing."""

import pytest

from webrtc_receiver.settings import SETTING_DEFINITIONS, AppSettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for setting in SETTING_DEFINITIONS:
        monkeypatch.delenv(f"WEBRTC_RECEIVER_{setting['name'].upper()}", raising=False)


class TestAppSettings:
    """Tests for AppSettings precedence and type handling."""

    def test_defaults(self):
        settings = AppSettings(SETTING_DEFINITIONS, [])
        assert settings.signaling_server == "ws://127.0.0.1:8443"
        assert settings.port == 8080
        assert settings.autostart == (False, False)
        assert settings.enable_metrics == (False, False)

    def test_cli_overrides_env(self, monkeypatch):
        monkeypatch.setenv("WEBRTC_RECEIVER_PORT", "9000")
        settings = AppSettings(SETTING_DEFINITIONS, ["--port", "9100"])
        assert settings.port == 9100

    def test_env_overrides_default(self, monkeypatch):
        monkeypatch.setenv("WEBRTC_RECEIVER_SIGNALING_SERVER", "wss://signal.example:443")
        settings = AppSettings(SETTING_DEFINITIONS, [])
        assert settings.signaling_server == "wss://signal.example:443"

    def test_locked_bool(self, monkeypatch):
        monkeypatch.setenv("WEBRTC_RECEIVER_AUTOSTART", "true|locked")
        settings = AppSettings(SETTING_DEFINITIONS, [])
        assert settings.autostart == (True, True)

    def test_invalid_int_falls_back_to_default(self):
        settings = AppSettings(SETTING_DEFINITIONS, ["--metrics-port", "lots"])
        assert settings.metrics_port == 8000

    def test_unknown_arguments_are_ignored(self):
        settings = AppSettings(SETTING_DEFINITIONS, ["--not-a-setting", "x", "--debug", "1"])
        assert settings.debug == (True, False)
