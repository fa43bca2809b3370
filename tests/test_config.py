import json

import pytest

from rxclaw.categorizer import Notification, NotificationRule
from rxclaw.config import (
    DEFAULT_GATEWAY_URL,
    ENV_DATA_DIR,
    ENV_GATEWAY_URL,
    ENV_NODE_MODE,
    ENV_TOKEN,
    Settings,
    default_data_dir,
    extract_credentials,
    is_valid_gateway_url,
    normalize_gateway_url,
    origin_for_url,
    try_normalize_gateway_url,
    write_json_atomic,
)


class TestGatewayUrl:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("ws://host:18789", "ws://host:18789"),
            ("  wss://host/path  ", "wss://host/path"),
            ("http://host:18789", "ws://host:18789"),
            ("HTTPS://host", "wss://host"),
            ("ftp://host", None),
            ("host:18789", None),
            ("http://", None),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize(self, url, expected):
        assert try_normalize_gateway_url(url) == expected
        assert is_valid_gateway_url(url) is (expected is not None)

    def test_unusable_url_is_trimmed(self):
        assert normalize_gateway_url("  not a url ") == "not a url"

    def test_credentials(self):
        assert extract_credentials("ws://user:pw@host:1") == "user:pw"
        assert extract_credentials("ws://host:1") is None

    def test_origin(self):
        assert origin_for_url("wss://host/path") == "https://host:443"
        assert origin_for_url("ws://host:18789") == "http://host:18789"


class TestDataDir:
    def test_env_override(self, tmp_path):
        assert default_data_dir({ENV_DATA_DIR: str(tmp_path)}) == tmp_path


class TestSettings:
    """Persistence, environment overrides and the notification filter."""

    def test_defaults(self):
        settings = Settings()

        assert settings.gateway_url == DEFAULT_GATEWAY_URL
        assert settings.token == ""
        assert not settings.enable_node_mode
        assert not settings.allow_system_run

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "settings.json"
        settings = Settings(token="t", notify_stock=False, user_rules=[NotificationRule("ci", "build")])

        settings.save(path)
        loaded = Settings.load(path)

        assert loaded == settings
        assert json.loads(path.read_text(encoding="utf-8"))["user_rules"][0]["pattern"] == "ci"

    def test_missing_file_gives_defaults(self, tmp_path):
        assert Settings.load(tmp_path / "absent.json") == Settings()

    def test_corrupt_file_gives_defaults(self, tmp_path, logger_provider, log_exporter):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2", encoding="utf-8")

        assert Settings.load(path, logger_provider=logger_provider) == Settings()
        assert any("Failed to load settings" in m for m in log_exporter.messages())

    def test_wrong_types_are_ignored(self):
        settings = Settings.from_dict({"token": 5, "notify_email": "no", "gateway_url": "ws://x:1"})

        assert settings.token == ""
        assert settings.notify_email is True
        assert settings.gateway_url == "ws://x:1"

    def test_env_overrides(self):
        settings = Settings().with_env(
            {ENV_GATEWAY_URL: "ws://env:1", ENV_TOKEN: "env-token", ENV_NODE_MODE: "Yes"}
        )

        assert settings.gateway_url == "ws://env:1"
        assert settings.token == "env-token"
        assert settings.enable_node_mode

    def test_set_value(self):
        settings = Settings()

        settings.set_value("notify_email", "off")
        settings.set_value("token", "abc")

        assert settings.notify_email is False
        assert settings.token == "abc"
        with pytest.raises(KeyError):
            settings.set_value("user_rules", "[]")
        with pytest.raises(ValueError):
            settings.set_value("notify_email", "maybe")

    @pytest.mark.parametrize(
        "notification, shown",
        [
            (Notification("x", type="stock"), False),
            (Notification("x", type="error"), False),
            (Notification("x", type="health"), True),
            (Notification("x", type="info", is_chat=True), False),
            (Notification("x", type="custom"), True),
        ],
    )
    def test_should_show(self, notification, shown):
        settings = Settings(notify_stock=False, notify_urgent=False, notify_chat_responses=False)

        assert settings.should_show(notification) is shown

    def test_master_switch(self):
        assert not Settings(show_notifications=False).should_show(Notification("x", type="health"))


class TestWriteJsonAtomic:
    def test_writes_and_replaces(self, tmp_path):
        path = tmp_path / "data.json"

        write_json_atomic(path, {"a": 1})
        write_json_atomic(path, {"a": "é"})

        assert json.loads(path.read_text(encoding="utf-8")) == {"a": "é"}
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]

    def test_failed_write_leaves_no_temp_file(self, tmp_path):
        path = tmp_path / "data.json"

        with pytest.raises(TypeError):
            write_json_atomic(path, {"a": object()})

        assert list(tmp_path.iterdir()) == []
