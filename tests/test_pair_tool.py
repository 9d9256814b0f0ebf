import json

import httpx
import pytest

from hue_xpl.config import AppConfig
from hue_xpl.pair_tool import _bridge_url, _parse_pairing, _register, _user_is_valid


def test_parse_pairing_success():
    username, error = _parse_pairing([{"success": {"username": "abc123"}}])
    assert username == "abc123"
    assert error is None


def test_parse_pairing_link_button_error():
    username, error = _parse_pairing([{"error": {"type": 101, "description": "link button not pressed"}}])
    assert username is None
    assert error["type"] == 101


@pytest.mark.parametrize("payload", [{}, [], "nope", [{"other": 1}]])
def test_parse_pairing_unexpected_payload(payload):
    username, error = _parse_pairing(payload)
    assert username is None
    assert "unexpected response" in error["description"]


def test_bridge_url():
    assert _bridge_url("bridge.local", None) == "http://bridge.local"
    assert _bridge_url("bridge.local", 8080) == "http://bridge.local:8080"


def test_user_is_valid_checks_for_unauthorized_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/good/lights":
            return httpx.Response(200, json={})
        return httpx.Response(200, json=[{"error": {"type": 1, "description": "unauthorized user"}}])

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        assert _user_is_valid(client, "http://bridge.test", "good")
        assert not _user_is_valid(client, "http://bridge.test", "bad")


def test_config_from_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("HUE_BRIDGE_HOST", "10.0.0.2")
    monkeypatch.setenv("HUE_BRIDGE_PORT", "8080")
    monkeypatch.setenv("POLL_INTERVAL_MS", "250")
    monkeypatch.setenv("XPL_SOURCE", "hue.test")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.delenv("HUE_USERNAME", raising=False)

    config = AppConfig.from_env()

    assert config.bridge_host == "10.0.0.2"
    assert config.bridge_port == 8080
    assert config.username == "hue-xpl"
    assert config.poll_interval == 0.25
    assert config.xpl_source == "hue.test"
    assert config.log_level == "DEBUG"
    assert config.retry_ceiling == 10


def test_register_posts_devicetype_and_yields_username():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/api"
        assert json.loads(request.content) == {"devicetype": "hue-xpl#test"}
        return httpx.Response(200, json=[{"success": {"username": "abc123"}}])

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        payload = _register(client, "http://bridge.test", "hue-xpl#test")

    assert _parse_pairing(payload) == ("abc123", None)
