"""Settings persistence, data-directory resolution and gateway URL helpers."""

import json
import os
import sys
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlsplit

from .categorizer import Notification, NotificationRule
from .telemetry import make_logger
from .utils import get_short_error_info

DEFAULT_GATEWAY_URL = "ws://localhost:18789"
SETTINGS_FILE = "settings.json"
APP_DIR_NAME = "rxclaw"

ENV_GATEWAY_URL = "RXCLAW_GATEWAY_URL"
ENV_TOKEN = "RXCLAW_TOKEN"
ENV_NODE_MODE = "RXCLAW_NODE_MODE"
ENV_DATA_DIR = "RXCLAW_DATA_DIR"

_TRUTHY = {"1", "true", "yes", "on"}


# =============================================================================
# Gateway URL helpers
# =============================================================================


def try_normalize_gateway_url(url: str | None) -> str | None:
    """Map a user-entered gateway URL onto a WebSocket URL.

    ``ws``/``wss`` pass through; ``http`` becomes ``ws`` and ``https``
    becomes ``wss``. The scheme is matched case-insensitively and the rest
    of the text is kept as typed. Returns ``None`` when the URL is not
    usable.
    """
    if url is None or not url.strip():
        return None
    trimmed = url.strip()
    scheme, sep, remainder = trimmed.partition("://")
    if not sep or not remainder:
        return None
    try:
        host = urlsplit(trimmed).hostname
    except ValueError:
        return None
    if not host:
        return None
    scheme = scheme.lower()
    if scheme in ("ws", "wss"):
        return trimmed
    if scheme == "http":
        return "ws://" + remainder
    if scheme == "https":
        return "wss://" + remainder
    return None


def normalize_gateway_url(url: str | None) -> str:
    """Normalized URL, or the trimmed input when it cannot be normalized."""
    normalized = try_normalize_gateway_url(url)
    if normalized is not None:
        return normalized
    return (url or "").strip()


def is_valid_gateway_url(url: str | None) -> bool:
    return try_normalize_gateway_url(url) is not None


def extract_credentials(url: str | None) -> str | None:
    """``user:password`` part of the URL, if any."""
    if url is None or not url.strip():
        return None
    try:
        netloc = urlsplit(url.strip()).netloc
    except ValueError:
        return None
    userinfo, sep, _ = netloc.rpartition("@")
    return userinfo if sep and userinfo else None


def origin_for_url(url: str) -> str:
    """``Origin`` header sent with the socket handshake."""
    parts = urlsplit(url)
    secure = parts.scheme.lower() in ("wss", "https")
    port = parts.port or (443 if secure else 80)
    return f"{'https' if secure else 'http'}://{parts.hostname}:{port}"


# =============================================================================
# Data directory
# =============================================================================


def default_data_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Per-user directory holding settings, device identity and logs."""
    env = os.environ if environ is None else environ
    override = env.get(ENV_DATA_DIR)
    if override:
        return Path(override).expanduser()
    if sys.platform.startswith("win"):
        base = env.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(base) / APP_DIR_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    base = env.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / APP_DIR_NAME


def write_json_atomic(path: Path, data: Any, mode: int | None = None) -> None:
    """Write JSON through a temp file in the same directory, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, ensure_ascii=False)
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise


# =============================================================================
# Settings
# =============================================================================


@dataclass
class Settings:
    """User settings.

    Per-category ``notify_*`` toggles gate notifications after
    classification; ``error`` notifications follow ``notify_urgent``.
    """

    gateway_url: str = DEFAULT_GATEWAY_URL
    token: str = ""
    show_notifications: bool = True
    notify_health: bool = True
    notify_urgent: bool = True
    notify_reminder: bool = True
    notify_email: bool = True
    notify_calendar: bool = True
    notify_build: bool = True
    notify_stock: bool = True
    notify_info: bool = True
    notify_chat_responses: bool = True
    prefer_structured_categories: bool = True
    user_rules: list[NotificationRule] = field(default_factory=list)
    enable_node_mode: bool = False
    allow_system_run: bool = False

    # ---------------- serialization ---------------- #

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "user_rules":
                value = [rule.to_dict() for rule in value]
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        settings = cls()
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if f.name == "user_rules":
                if isinstance(value, list):
                    settings.user_rules = [
                        NotificationRule.from_dict(item)
                        for item in value
                        if isinstance(item, dict)
                    ]
                continue
            default = getattr(settings, f.name)
            if isinstance(default, bool):
                if isinstance(value, bool):
                    setattr(settings, f.name, value)
            elif isinstance(value, str):
                setattr(settings, f.name, value)
        return settings

    @classmethod
    def load(cls, path: Path | None = None, logger_provider=None) -> "Settings":
        """Read settings; defaults when the file is missing or unreadable."""
        path = path or default_data_dir() / SETTINGS_FILE
        if not path.exists():
            return cls()
        try:
            with open(path, encoding="utf-8") as handle:
                data = json.load(handle)
            if not isinstance(data, dict):
                raise ValueError("settings root must be an object")
        except (OSError, ValueError) as e:
            make_logger("Settings", logger_provider).warning(
                f"Failed to load settings, using defaults: {get_short_error_info(e)}",
                path=str(path),
            )
            return cls()
        return cls.from_dict(data)

    def save(self, path: Path | None = None) -> Path:
        path = path or default_data_dir() / SETTINGS_FILE
        write_json_atomic(path, self.to_dict())
        return path

    def with_env(self, environ: Mapping[str, str] | None = None) -> "Settings":
        """Apply ``RXCLAW_*`` overrides in place and return ``self``."""
        env = os.environ if environ is None else environ
        if env.get(ENV_GATEWAY_URL):
            self.gateway_url = env[ENV_GATEWAY_URL]
        if env.get(ENV_TOKEN):
            self.token = env[ENV_TOKEN]
        if env.get(ENV_NODE_MODE):
            self.enable_node_mode = env[ENV_NODE_MODE].strip().lower() in _TRUTHY
        return self

    def set_value(self, key: str, raw: str) -> None:
        """Assign a scalar setting from its command-line text form."""
        names = {f.name for f in fields(self)} - {"user_rules"}
        if key not in names:
            raise KeyError(f"Unknown setting: {key}")
        if isinstance(getattr(self, key), bool):
            lowered = raw.strip().lower()
            if lowered not in _TRUTHY | {"0", "false", "no", "off"}:
                raise ValueError(f"Expected a boolean for {key}, got {raw!r}")
            setattr(self, key, lowered in _TRUTHY)
        else:
            setattr(self, key, raw)

    # ---------------- notification filter ---------------- #

    def should_show(self, notification: Notification) -> bool:
        if not self.show_notifications:
            return False
        if notification.is_chat and not self.notify_chat_responses:
            return False
        toggles = {
            "health": self.notify_health,
            "urgent": self.notify_urgent,
            "reminder": self.notify_reminder,
            "email": self.notify_email,
            "calendar": self.notify_calendar,
            "build": self.notify_build,
            "stock": self.notify_stock,
            "info": self.notify_info,
            "error": self.notify_urgent,
        }
        return toggles.get((notification.type or "").lower(), True)
