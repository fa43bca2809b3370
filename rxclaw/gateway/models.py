"""Typed snapshots of gateway state published by the operator client."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# =============================================================================
# Agent activity
# =============================================================================


class ActivityKind(Enum):
    IDLE = "idle"
    JOB = "job"
    EXEC = "exec"
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    SEARCH = "search"
    BROWSE = "browse"
    MESSAGE = "message"
    TOOL = "tool"


ACTIVITY_GLYPHS: dict[ActivityKind, str] = {
    ActivityKind.EXEC: "💻",
    ActivityKind.READ: "📄",
    ActivityKind.WRITE: "✍️",
    ActivityKind.EDIT: "📝",
    ActivityKind.SEARCH: "🔍",
    ActivityKind.BROWSE: "🌐",
    ActivityKind.MESSAGE: "💬",
    ActivityKind.TOOL: "🛠️",
    ActivityKind.JOB: "⚡",
}

TOOL_KINDS: dict[str, ActivityKind] = {
    "exec": ActivityKind.EXEC,
    "read": ActivityKind.READ,
    "write": ActivityKind.WRITE,
    "edit": ActivityKind.EDIT,
    "web_search": ActivityKind.SEARCH,
    "web_fetch": ActivityKind.SEARCH,
    "browser": ActivityKind.BROWSE,
    "message": ActivityKind.MESSAGE,
}


def kind_for_tool(tool_name: str | None) -> ActivityKind:
    """Case-insensitive tool lookup; anything unknown is a generic tool."""
    return TOOL_KINDS.get((tool_name or "").lower(), ActivityKind.TOOL)


@dataclass(frozen=True)
class AgentActivity:
    session_key: str
    is_main: bool
    kind: ActivityKind = ActivityKind.IDLE
    state: str = ""
    tool_name: str = ""
    label: str = ""

    @property
    def glyph(self) -> str:
        return ACTIVITY_GLYPHS.get(self.kind, "")

    @property
    def display_text(self) -> str:
        if self.kind is ActivityKind.IDLE:
            return ""
        return f"{'Main' if self.is_main else 'Sub'} · {self.glyph} {self.label}"


# =============================================================================
# Channels
# =============================================================================

_CHANNEL_BADGES: dict[str, str] = {
    "ok": "[ON]",
    "connected": "[ON]",
    "running": "[ON]",
    "linked": "[LINKED]",
    "ready": "[READY]",
    "connecting": "[...]",
    "reconnecting": "[...]",
    "error": "[ERR]",
    "disconnected": "[ERR]",
    "stale": "[STALE]",
    "not configured": "[N/A]",
}


@dataclass(frozen=True)
class ChannelHealth:
    name: str
    status: str = "unknown"
    is_linked: bool = False
    error: str | None = None
    auth_age: str | None = None
    type: str | None = None

    @property
    def display_text(self) -> str:
        badge = _CHANNEL_BADGES.get(self.status.lower(), "[OFF]")
        if self.is_linked and self.auth_age is not None:
            detail = f"linked · {self.auth_age}"
        else:
            detail = self.status
        if self.error is not None:
            detail += f" ({self.error})"
        name = self.name[:1].upper() + self.name[1:]
        return f"{badge} {name}: {detail}"


# =============================================================================
# Sessions
# =============================================================================


@dataclass(frozen=True)
class SessionInfo:
    """One agent session as listed by ``sessions.list``.

    ``last_seen`` comes from the gateway's ``updatedAt`` or, for sessions
    only known from activity events, the time the activity arrived.
    """

    key: str
    is_main: bool = False
    status: str = "unknown"
    model: str | None = None
    channel: str | None = None
    display_name: str | None = None
    provider: str | None = None
    subject: str | None = None
    room: str | None = None
    space: str | None = None
    session_id: str | None = None
    thinking_level: str | None = None
    verbose_level: str | None = None
    system_sent: bool | None = None
    aborted_last_run: bool | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    context_tokens: int = 0
    current_activity: str | None = None
    started_at: datetime | None = None
    last_seen: datetime | None = None

    @property
    def display_text(self) -> str:
        parts = ["Main" if self.is_main else "Sub"]
        if self.channel:
            parts.append(self.channel)
        if self.current_activity:
            parts.append(self.current_activity)
        elif self.status and self.status not in ("unknown", "active"):
            parts.append(self.status)
        return " · ".join(parts)

    @property
    def short_key(self) -> str:
        """``agent:main:subagent:uuid`` -> ``subagent``."""
        if not self.key:
            return "unknown"
        parts = self.key.split(":")
        if len(parts) >= 3:
            return parts[-2]
        if "/" in self.key or "\\" in self.key:
            return self.key.replace("\\", "/").rsplit("/", 1)[-1]
        return self.key if len(self.key) <= 20 else self.key[:17] + "..."


@dataclass(frozen=True)
class SessionPreviewItem:
    role: str = "other"
    text: str = ""


@dataclass(frozen=True)
class SessionPreview:
    key: str
    status: str = "unknown"
    items: tuple[SessionPreviewItem, ...] = ()


@dataclass(frozen=True)
class SessionsPreviewPayload:
    updated_at: datetime
    previews: tuple[SessionPreview, ...] = ()


@dataclass(frozen=True)
class SessionCommandResult:
    method: str
    ok: bool
    key: str | None = None
    reason: str | None = None
    deleted: bool | None = None
    compacted: bool | None = None
    kept: int | None = None
    error: str | None = None


# =============================================================================
# Nodes
# =============================================================================


@dataclass(frozen=True)
class GatewayNodeInfo:
    node_id: str
    display_name: str
    mode: str = "node"
    status: str = "unknown"
    platform: str | None = None
    last_seen: datetime | None = None
    capability_count: int = 0
    command_count: int = 0
    is_online: bool = False

    @property
    def short_id(self) -> str:
        return self.node_id if len(self.node_id) <= 12 else self.node_id[:12] + "…"

    @property
    def display_text(self) -> str:
        parts = [self.display_name, self.status]
        if self.platform:
            parts.append(self.platform)
        if self.command_count:
            parts.append(f"{self.command_count} cmds")
        return " · ".join(parts)


# =============================================================================
# Usage
# =============================================================================


def format_count(n: int) -> str:
    if n >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    if n >= 1_000:
        return f"{n / 1_000:.1f}K"
    return str(n)


@dataclass(frozen=True)
class GatewayUsageInfo:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    request_count: int = 0
    model: str | None = None
    provider_summary: str | None = None

    @property
    def display_text(self) -> str:
        parts = []
        if self.total_tokens > 0:
            parts.append(f"Tokens: {format_count(self.total_tokens)}")
        if self.cost_usd > 0:
            parts.append(f"${self.cost_usd:.2f}")
        if self.request_count > 0:
            parts.append(f"{self.request_count} requests")
        if self.model:
            parts.append(self.model)
        return " · ".join(parts) if parts else "No usage data"


@dataclass(frozen=True)
class UsageWindow:
    label: str = ""
    used_percent: float = 0.0
    reset_at: datetime | None = None


@dataclass(frozen=True)
class UsageProvider:
    provider: str = ""
    display_name: str = ""
    plan: str | None = None
    error: str | None = None
    windows: tuple[UsageWindow, ...] = ()


@dataclass(frozen=True)
class GatewayUsageStatus:
    updated_at: datetime
    providers: tuple[UsageProvider, ...] = ()


@dataclass(frozen=True)
class CostTotals:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    missing_cost_entries: int = 0


@dataclass(frozen=True)
class CostDay(CostTotals):
    date: str = ""


@dataclass(frozen=True)
class GatewayCostUsage:
    updated_at: datetime
    days: int = 0
    totals: CostTotals = field(default_factory=CostTotals)
    daily: tuple[CostDay, ...] = ()


# =============================================================================
# Pairing
# =============================================================================


class PairingStatus(Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    PAIRED = "paired"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PairingEvent:
    status: PairingStatus
    device_id: str
    message: str | None = None
