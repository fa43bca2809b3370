"""Operator-role gateway client: correlation, event decoding and snapshots."""

from .client import GatewayClient
from .correlator import (
    FALLBACKS,
    PendingRequest,
    RequestCorrelator,
    is_unknown_method_error,
)
from .decoder import (
    AgentEvent,
    ChallengeEvent,
    ChatEvent,
    GatewayEvent,
    HealthEvent,
    InvokeRequestEvent,
    SessionChangedEvent,
    UnknownEvent,
    build_provider_summary,
    decode_event,
    parse_channel_health,
    parse_nodes,
    parse_sessions,
    parse_usage,
    parse_usage_cost,
    parse_usage_status,
)
from .models import (
    ActivityKind,
    AgentActivity,
    ChannelHealth,
    GatewayCostUsage,
    GatewayNodeInfo,
    GatewayUsageInfo,
    GatewayUsageStatus,
    PairingEvent,
    PairingStatus,
    SessionCommandResult,
    SessionInfo,
    SessionsPreviewPayload,
)
from .snapshots import GatewaySnapshots

__all__ = [
    "GatewayClient",
    # correlator
    "FALLBACKS",
    "PendingRequest",
    "RequestCorrelator",
    "is_unknown_method_error",
    # decoder
    "AgentEvent",
    "ChallengeEvent",
    "ChatEvent",
    "GatewayEvent",
    "HealthEvent",
    "InvokeRequestEvent",
    "SessionChangedEvent",
    "UnknownEvent",
    "build_provider_summary",
    "decode_event",
    "parse_channel_health",
    "parse_nodes",
    "parse_sessions",
    "parse_usage",
    "parse_usage_cost",
    "parse_usage_status",
    # models
    "ActivityKind",
    "AgentActivity",
    "ChannelHealth",
    "GatewayCostUsage",
    "GatewayNodeInfo",
    "GatewayUsageInfo",
    "GatewayUsageStatus",
    "PairingEvent",
    "PairingStatus",
    "SessionCommandResult",
    "SessionInfo",
    "SessionsPreviewPayload",
    # snapshots
    "GatewaySnapshots",
]
