"""Layered notification categorization.

Evaluation order, first match wins:

1. ``intent`` hint against :data:`INTENT_MAP`
2. ``channel`` hint against :data:`CHANNEL_MAP`
3. the first enabled user rule matching ``"<title> <message>"``
4. built-in keyword table over the message text
5. the ``info`` default

Regex rules run under a bounded timeout; an invalid pattern or a timeout is a
non-match, never an error.
"""

from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Any, Sequence

import regex

REGEX_TIMEOUT_SECONDS = 0.1

DEFAULT_CATEGORY = "info"

CATEGORY_TITLES: dict[str, str] = {
    "health": "🩸 Blood Sugar Alert",
    "urgent": "🚨 Urgent Alert",
    "reminder": "⏰ Reminder",
    "stock": "📦 Stock Alert",
    "email": "📧 Email",
    "calendar": "📅 Calendar",
    "error": "⚠️ Error",
    "build": "🔨 Build",
    "info": "🤖 OpenClaw",
}

INTENT_MAP: dict[str, str] = {
    "health": "health",
    "urgent": "urgent",
    "alert": "urgent",
    "reminder": "reminder",
    "email": "email",
    "calendar": "calendar",
    "build": "build",
    "stock": "stock",
    "error": "error",
}

CHANNEL_MAP: dict[str, str] = {
    "calendar": "calendar",
    "email": "email",
    "ci": "build",
    "build": "build",
    "inventory": "stock",
    "stock": "stock",
    "health": "health",
    "alerts": "urgent",
}

# Scanned in order against the lower-cased message.
KEYWORD_TABLE: tuple[tuple[tuple[str, ...], str], ...] = (
    (("blood sugar", "glucose", "cgm", "mg/dl"), "health"),
    (("urgent", "critical", "emergency"), "urgent"),
    (("reminder",), "reminder"),
    (("stock", "in stock", "available now"), "stock"),
    (("email", "inbox", "gmail"), "email"),
    (("calendar", "meeting", "event"), "calendar"),
    (("error", "failed", "exception"), "error"),
    (("build", "ci ", "deploy"), "build"),
)


@dataclass
class Notification:
    """A user-facing notification synthesized from gateway events.

    ``channel``, ``agent``, ``intent`` and ``tags`` are optional structured
    hints supplied by the gateway.
    """

    message: str
    title: str = ""
    type: str = ""
    is_chat: bool = False
    channel: str | None = None
    agent: str | None = None
    intent: str | None = None
    tags: tuple[str, ...] = ()


@dataclass
class NotificationRule:
    pattern: str
    category: str = DEFAULT_CATEGORY
    is_regex: bool = False
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "category": self.category,
            "is_regex": self.is_regex,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationRule":
        return cls(
            pattern=str(data.get("pattern") or ""),
            category=str(data.get("category") or DEFAULT_CATEGORY),
            is_regex=bool(data.get("is_regex", False)),
            enabled=bool(data.get("enabled", True)),
        )


def title_for(category: str) -> str:
    return CATEGORY_TITLES.get(category.lower(), CATEGORY_TITLES[DEFAULT_CATEGORY])


@lru_cache(maxsize=256)
def _compile(pattern: str):
    return regex.compile(pattern, regex.IGNORECASE)


def matches_rule(text: str, rule: NotificationRule) -> bool:
    """Literal rules are case-insensitive substring tests."""
    if not rule.pattern:
        return False
    if not rule.is_regex:
        return rule.pattern.lower() in text.lower()
    try:
        return _compile(rule.pattern).search(text, timeout=REGEX_TIMEOUT_SECONDS) is not None
    except (regex.error, TimeoutError):
        return False


def classify_by_keywords(text: str) -> tuple[str, str]:
    lower = text.lower()
    for keywords, category in KEYWORD_TABLE:
        if any(keyword in lower for keyword in keywords):
            return title_for(category), category
    return title_for(DEFAULT_CATEGORY), DEFAULT_CATEGORY


class NotificationCategorizer:
    """Stateless classifier; holds only the structured-hint preference."""

    def __init__(self, prefer_structured: bool = True):
        self.prefer_structured = prefer_structured

    def classify(
        self,
        notification: Notification,
        rules: Sequence[NotificationRule] | None = None,
    ) -> tuple[str, str]:
        """Return ``(title, category)`` for ``notification``."""
        if self.prefer_structured:
            if notification.intent:
                category = INTENT_MAP.get(notification.intent.lower())
                if category:
                    return title_for(category), category
            if notification.channel:
                category = CHANNEL_MAP.get(notification.channel.lower())
                if category:
                    return title_for(category), category

        if rules:
            search_text = f"{notification.title} {notification.message}"
            for rule in rules:
                if rule.enabled and matches_rule(search_text, rule):
                    category = rule.category.lower()
                    return title_for(category), category

        return classify_by_keywords(notification.message)

    def apply(
        self,
        notification: Notification,
        rules: Sequence[NotificationRule] | None = None,
    ) -> Notification:
        """Copy of ``notification`` with title and type filled in."""
        title, category = self.classify(notification, rules)
        return replace(notification, title=title, type=category)


def classify(
    notification: Notification,
    rules: Sequence[NotificationRule] | None = None,
) -> tuple[str, str]:
    return NotificationCategorizer().classify(notification, rules)
