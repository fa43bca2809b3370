"""Typed decoding of gateway events and response payloads.

Payload shapes vary across gateway versions (sessions as an array or a
keyed object, invoke arguments as an object or a JSON string, errors as a
string or an object). Every parser here reads its input defensively: a
field of the wrong type is treated as absent rather than raising.
"""

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Iterable

from ..transport.frames import EventFrame
from ..utils import (
    array_len,
    first_non_empty,
    get_bool,
    get_float,
    get_int,
    get_str,
    get_timestamp,
    parse_iso_datetime,
    shorten_path,
    truncate_label,
)
from .models import (
    ActivityKind,
    AgentActivity,
    ChannelHealth,
    CostDay,
    CostTotals,
    GatewayCostUsage,
    GatewayNodeInfo,
    GatewayUsageInfo,
    GatewayUsageStatus,
    SessionCommandResult,
    SessionInfo,
    SessionPreview,
    SessionPreviewItem,
    SessionsPreviewPayload,
    UsageProvider,
    UsageWindow,
    kind_for_tool,
)

# Keys of the object-form session map that carry metadata, not sessions.
SESSION_METADATA_KEYS = frozenset({"recent", "count", "path", "defaults", "ts"})

ONLINE_STATUSES = frozenset({"ok", "online", "connected", "ready", "active"})

SESSION_COMMANDS = frozenset(
    {"sessions.patch", "sessions.reset", "sessions.delete", "sessions.compact"}
)


# =============================================================================
# Typed events
# =============================================================================


@dataclass(frozen=True)
class ChallengeEvent:
    nonce: str | None
    ts: datetime | None = None


@dataclass(frozen=True)
class AgentEvent:
    session_key: str
    is_main: bool
    activity: AgentActivity | None = None
    content: str | None = None
    channel: str | None = None
    agent: str | None = None
    intent: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChatEvent:
    texts: tuple[str, ...] = ()


@dataclass(frozen=True)
class HealthEvent:
    channels: tuple[ChannelHealth, ...] = ()


@dataclass(frozen=True)
class SessionChangedEvent:
    session_key: str | None = None


@dataclass(frozen=True)
class InvokeRequestEvent:
    payload: Any = None


@dataclass(frozen=True)
class UnknownEvent:
    name: str


GatewayEvent = (
    ChallengeEvent
    | AgentEvent
    | ChatEvent
    | HealthEvent
    | SessionChangedEvent
    | InvokeRequestEvent
    | UnknownEvent
)


def decode_event(frame: EventFrame) -> GatewayEvent:
    """Dispatch on the event name."""
    name = frame.event
    payload = frame.payload
    if name == "connect.challenge":
        return ChallengeEvent(
            nonce=get_str(payload, "nonce"),
            ts=get_timestamp(payload, "ts"),
        )
    if name == "agent":
        return parse_agent_event(frame)
    if name == "chat":
        return ChatEvent(texts=parse_chat_texts(payload))
    if name == "health":
        channels = payload.get("channels") if isinstance(payload, dict) else None
        return HealthEvent(channels=parse_channel_health(channels))
    if name == "session":
        return SessionChangedEvent(session_key=frame.session_key)
    if name == "node.invoke.request":
        return InvokeRequestEvent(payload=payload)
    return UnknownEvent(name=name)


# =============================================================================
# Agent activity
# =============================================================================


def is_main_session_key(key: str) -> bool:
    """Main session keys: ``main``, ``...:main`` or ``...:main:main...``; subagents are not."""
    return key == "main" or key.endswith(":main") or ":main:main" in key


def parse_agent_event(frame: EventFrame) -> AgentEvent:
    session_key = frame.session_key or "unknown"
    is_main = is_main_session_key(session_key)
    payload = frame.payload if isinstance(frame.payload, dict) else {}

    activity = None
    stream = get_str(payload, "stream")
    if stream == "job":
        activity = _job_activity(payload, session_key, is_main)
    elif stream == "tool":
        activity = _tool_activity(payload, session_key, is_main)

    tags = payload.get("tags")
    return AgentEvent(
        session_key=session_key,
        is_main=is_main,
        activity=activity,
        content=get_str(payload, "content") or None,
        channel=get_str(payload, "channel"),
        agent=get_str(payload, "agent"),
        intent=get_str(payload, "intent"),
        tags=tuple(t for t in tags if isinstance(t, str)) if isinstance(tags, list) else (),
    )


def _job_activity(payload: dict, session_key: str, is_main: bool) -> AgentActivity:
    state = get_str(payload.get("data"), "state") or "unknown"
    return AgentActivity(
        session_key=session_key,
        is_main=is_main,
        kind=ActivityKind.IDLE if state in ("done", "error") else ActivityKind.JOB,
        state=state,
        label=f"Job: {state}",
    )


def _tool_activity(payload: dict, session_key: str, is_main: bool) -> AgentActivity:
    data = payload.get("data")
    phase = get_str(data, "phase") or ""
    tool_name = get_str(data, "name") or ""
    args = data.get("args") if isinstance(data, dict) else None

    label = ""
    if isinstance(args, dict):
        if "command" in args:
            label = truncate_label((get_str(args, "command") or "").split("\n")[0])
        elif "path" in args:
            label = shorten_path(get_str(args, "path") or "")
        elif "file_path" in args:
            label = shorten_path(get_str(args, "file_path") or "")
        elif "query" in args:
            label = truncate_label(get_str(args, "query") or "")
        elif "url" in args:
            label = truncate_label(get_str(args, "url") or "")

    return AgentActivity(
        session_key=session_key,
        is_main=is_main,
        kind=ActivityKind.IDLE if phase == "result" else kind_for_tool(tool_name),
        state=phase,
        tool_name=tool_name,
        label=label or tool_name,
    )


def session_activity_text(activity: AgentActivity) -> str | None:
    """Text stored on the tracked session, ``None`` once the agent is idle."""
    if activity.kind is ActivityKind.IDLE:
        return None
    if activity.kind is ActivityKind.JOB:
        return activity.label
    return f"{activity.glyph} {activity.label}"


# =============================================================================
# Chat
# =============================================================================


def parse_chat_texts(payload: Any) -> tuple[str, ...]:
    """Assistant texts worth a notification.

    The structured shape only counts once ``state`` is ``final`` so partial
    streaming updates stay silent; the legacy ``text``/``role`` shape has no
    such marker.
    """
    if not isinstance(payload, dict):
        return ()
    message = payload.get("message")
    if message is not None:
        if get_str(message, "role") != "assistant" or get_str(payload, "state") != "final":
            return ()
        content = message.get("content")
        if not isinstance(content, list):
            return ()
        return tuple(
            item["text"]
            for item in content
            if get_str(item, "type") == "text" and get_str(item, "text")
        )
    text = get_str(payload, "text")
    if text and get_str(payload, "role") == "assistant":
        return (text,)
    return ()


# =============================================================================
# Channel health
# =============================================================================


def parse_channel_health(channels: Any) -> tuple[ChannelHealth, ...]:
    if not isinstance(channels, dict):
        return ()
    result = []
    for name, value in channels.items():
        value = value if isinstance(value, dict) else {}
        has_error = value.get("lastError") is not None
        status = get_str(value, "status")
        if status is None:
            if has_error:
                status = "error"
            elif get_bool(value, "running"):
                status = "running"
            elif get_bool(value, "configured"):
                status = "ready"
            else:
                status = "not configured"
        result.append(
            ChannelHealth(
                name=name,
                status=status,
                is_linked=bool(get_bool(value, "linked")),
                error=get_str(value, "error"),
                auth_age=get_str(value, "authAge"),
                type=get_str(value, "type"),
            )
        )
    return tuple(result)


# =============================================================================
# Sessions
# =============================================================================


def sessions_from_payload(payload: Any) -> Any:
    """``sessions.list`` answers either ``{sessions: ...}`` or the map itself."""
    if isinstance(payload, dict) and "sessions" in payload:
        return payload["sessions"]
    return payload


def _looks_like_session_key(key: str) -> bool:
    return (
        key.lower() == "global"
        or ":" in key
        or "agent" in key
        or "session" in key
    )


def _session_from_object(key: str, item: dict) -> SessionInfo:
    is_main = is_main_session_key(key) or get_bool(item, "isMain") is True
    started = item.get("startedAt")
    return SessionInfo(
        key=key,
        is_main=is_main,
        status=get_str(item, "status") or ("active" if "status" in item else "unknown"),
        model=get_str(item, "model"),
        channel=get_str(item, "channel"),
        display_name=get_str(item, "displayName"),
        provider=get_str(item, "provider"),
        subject=get_str(item, "subject"),
        room=get_str(item, "room"),
        space=get_str(item, "space"),
        session_id=get_str(item, "sessionId"),
        thinking_level=get_str(item, "thinkingLevel"),
        verbose_level=get_str(item, "verboseLevel"),
        system_sent=get_bool(item, "systemSent"),
        aborted_last_run=get_bool(item, "abortedLastRun"),
        input_tokens=get_int(item, "inputTokens"),
        output_tokens=get_int(item, "outputTokens"),
        total_tokens=get_int(item, "totalTokens"),
        context_tokens=get_int(item, "contextTokens"),
        started_at=parse_iso_datetime(started),
        last_seen=get_timestamp(item, "updatedAt"),
    )


def session_sort_key(session: SessionInfo) -> tuple:
    seen = session.last_seen.timestamp() if session.last_seen else float("-inf")
    return (not session.is_main, -seen, session.key)


def sort_sessions(sessions: Iterable[SessionInfo]) -> tuple[SessionInfo, ...]:
    """Main first, then most recently seen, then key for a stable order."""
    return tuple(sorted(sessions, key=session_sort_key))


def parse_sessions(sessions: Any) -> tuple[SessionInfo, ...]:
    """Full session list, ordered; later duplicates of a key win."""
    parsed: dict[str, SessionInfo] = {}
    if isinstance(sessions, list):
        for item in sessions:
            key = get_str(item, "key")
            if key is None:
                continue
            parsed[key] = _session_from_object(key, item)
    elif isinstance(sessions, dict):
        for key, value in sessions.items():
            if key in SESSION_METADATA_KEYS or not _looks_like_session_key(key):
                continue
            if isinstance(value, dict):
                parsed[key] = _session_from_object(key, value)
            elif isinstance(value, str):
                if value.startswith("/") or "/." in value:
                    continue
                parsed[key] = SessionInfo(
                    key=key, is_main=is_main_session_key(key), status=value
                )
            elif isinstance(value, (int, float)):
                continue
            else:
                parsed[key] = SessionInfo(key=key, is_main=is_main_session_key(key))
    return sort_sessions(parsed.values())


def parse_sessions_preview(payload: Any, now: datetime | None = None) -> SessionsPreviewPayload:
    previews = []
    raw = payload.get("previews") if isinstance(payload, dict) else None
    for entry in raw if isinstance(raw, list) else ():
        if not isinstance(entry, dict):
            continue
        items = entry.get("items")
        previews.append(
            SessionPreview(
                key=get_str(entry, "key") or "",
                status=get_str(entry, "status") or "unknown",
                items=tuple(
                    SessionPreviewItem(
                        role=get_str(item, "role") or "other",
                        text=get_str(item, "text") or "",
                    )
                    for item in (items if isinstance(items, list) else ())
                    if isinstance(item, dict)
                ),
            )
        )
    return SessionsPreviewPayload(
        updated_at=get_timestamp(payload, "ts") or now or datetime.now(UTC),
        previews=tuple(previews),
    )


def parse_session_command_result(method: str, payload: Any) -> SessionCommandResult:
    kept = payload.get("kept") if isinstance(payload, dict) else None
    return SessionCommandResult(
        method=method,
        ok=True,
        key=get_str(payload, "key"),
        reason=get_str(payload, "reason"),
        deleted=get_bool(payload, "deleted"),
        compacted=get_bool(payload, "compacted"),
        kept=get_int(payload, "kept") if isinstance(kept, (int, float)) and not isinstance(kept, bool) else None,
    )


# =============================================================================
# Nodes
# =============================================================================


def nodes_from_payload(payload: Any) -> Any:
    if isinstance(payload, dict):
        if "nodes" in payload:
            return payload["nodes"]
        if "items" in payload:
            return payload["items"]
    return payload


def _node_from_object(item: dict) -> GatewayNodeInfo | None:
    node_id = first_non_empty(
        get_str(item, "nodeId"),
        get_str(item, "deviceId"),
        get_str(item, "id"),
        get_str(item, "clientId"),
    )
    if node_id is None:
        return None
    status = first_non_empty(get_str(item, "status"), get_str(item, "state")) or "unknown"
    online = get_bool(item, "online")
    if online is None:
        online = get_bool(item, "connected")
    if online is None:
        online = status in ONLINE_STATUSES
    return GatewayNodeInfo(
        node_id=node_id,
        display_name=first_non_empty(
            get_str(item, "displayName"),
            get_str(item, "name"),
            get_str(item, "label"),
            get_str(item, "shortId"),
        )
        or node_id,
        mode=first_non_empty(get_str(item, "mode"), get_str(item, "clientMode")) or "node",
        status=status,
        platform=first_non_empty(get_str(item, "platform"), get_str(item, "os")),
        last_seen=(
            get_timestamp(item, "lastSeenAt")
            or get_timestamp(item, "lastSeen")
            or get_timestamp(item, "updatedAt")
            or get_timestamp(item, "connectedAt")
        ),
        capability_count=max(array_len(item, "caps"), array_len(item, "capabilities")),
        command_count=max(array_len(item, "declaredCommands"), array_len(item, "commands")),
        is_online=online,
    )


def parse_nodes(payload: Any) -> tuple[GatewayNodeInfo, ...]:
    """Node inventory: online first, then most recently seen, then by name."""
    nodes = nodes_from_payload(payload)
    if not isinstance(nodes, list):
        return ()
    parsed = [
        node
        for node in (_node_from_object(item) for item in nodes if isinstance(item, dict))
        if node is not None
    ]

    def order(node: GatewayNodeInfo) -> tuple:
        seen = node.last_seen.timestamp() if node.last_seen else float("-inf")
        return (not node.is_online, -seen, node.display_name.casefold())

    return tuple(sorted(parsed, key=order))


# =============================================================================
# Usage
# =============================================================================


def _has_number(obj: Any, key: str) -> bool:
    value = obj.get(key) if isinstance(obj, dict) else None
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_usage(payload: Any, previous: GatewayUsageInfo | None = None) -> GatewayUsageInfo:
    """Legacy ``usage`` answer merged over the previous totals."""
    usage = previous or GatewayUsageInfo()
    changes: dict[str, Any] = {"provider_summary": None}
    for key, attr in (
        ("inputTokens", "input_tokens"),
        ("outputTokens", "output_tokens"),
        ("totalTokens", "total_tokens"),
        ("requestCount", "request_count"),
    ):
        if _has_number(payload, key):
            changes[attr] = get_int(payload, key)
    if _has_number(payload, "cost"):
        changes["cost_usd"] = get_float(payload, "cost")
    if isinstance(payload, dict) and "model" in payload:
        changes["model"] = get_str(payload, "model")
    return replace(usage, **changes)


def parse_usage_status(payload: Any, now: datetime | None = None) -> GatewayUsageStatus:
    providers = []
    raw = payload.get("providers") if isinstance(payload, dict) else None
    for entry in raw if isinstance(raw, list) else ():
        if not isinstance(entry, dict):
            continue
        windows = entry.get("windows")
        providers.append(
            UsageProvider(
                provider=get_str(entry, "provider") or "",
                display_name=get_str(entry, "displayName") or get_str(entry, "provider") or "",
                plan=get_str(entry, "plan"),
                error=get_str(entry, "error"),
                windows=tuple(
                    UsageWindow(
                        label=get_str(window, "label") or "",
                        used_percent=get_float(window, "usedPercent"),
                        reset_at=get_timestamp(window, "resetAt"),
                    )
                    for window in (windows if isinstance(windows, list) else ())
                    if isinstance(window, dict)
                ),
            )
        )
    return GatewayUsageStatus(
        updated_at=get_timestamp(payload, "updatedAt") or now or datetime.now(UTC),
        providers=tuple(providers),
    )


def build_provider_summary(status: GatewayUsageStatus) -> str:
    """``"OpenAI: 58% left · Anthropic: error · +1"``.

    At most two providers are described; the busiest window of each decides
    the remaining percentage.
    """
    parts: list[str] = []
    for provider in status.providers:
        if len(parts) == 2:
            break
        name = first_non_empty(provider.display_name, provider.provider) or "provider"
        if provider.error and provider.error.strip():
            parts.append(f"{name}: error")
            continue
        if not provider.windows:
            continue
        window = max(provider.windows, key=lambda w: w.used_percent)
        remaining = min(max(round(100 - window.used_percent), 0), 100)
        parts.append(f"{name}: {remaining}% left")
    if not parts:
        return ""
    if len(status.providers) > 2:
        parts.append(f"+{len(status.providers) - 2}")
    return " · ".join(parts)


def _cost_fields(obj: dict) -> dict[str, Any]:
    return {
        "input": get_int(obj, "input"),
        "output": get_int(obj, "output"),
        "cache_read": get_int(obj, "cacheRead"),
        "cache_write": get_int(obj, "cacheWrite"),
        "total_tokens": get_int(obj, "totalTokens"),
        "total_cost": get_float(obj, "totalCost"),
        "missing_cost_entries": get_int(obj, "missingCostEntries"),
    }


def parse_usage_cost(payload: Any, now: datetime | None = None) -> GatewayCostUsage:
    totals = payload.get("totals") if isinstance(payload, dict) else None
    daily = payload.get("daily") if isinstance(payload, dict) else None
    return GatewayCostUsage(
        updated_at=get_timestamp(payload, "updatedAt") or now or datetime.now(UTC),
        days=get_int(payload, "days"),
        totals=CostTotals(**_cost_fields(totals)) if isinstance(totals, dict) else CostTotals(),
        daily=tuple(
            CostDay(date=get_str(day, "date") or "", **_cost_fields(day))
            for day in (daily if isinstance(daily, list) else ())
            if isinstance(day, dict)
        ),
    )
