"""Point-in-time mirrors of gateway state.

List snapshots are immutable tuples swapped wholesale under a lock; readers
always see either the old or the new list, never a half-applied update.
"""

import threading
from dataclasses import replace
from datetime import UTC, datetime
from typing import Callable

from .decoder import sort_sessions
from .models import (
    GatewayCostUsage,
    GatewayNodeInfo,
    GatewayUsageInfo,
    GatewayUsageStatus,
    SessionInfo,
)


class GatewaySnapshots:
    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: tuple[SessionInfo, ...] = ()
        self._nodes: tuple[GatewayNodeInfo, ...] = ()
        self._usage: GatewayUsageInfo | None = None
        self._usage_status: GatewayUsageStatus | None = None
        self._usage_cost: GatewayCostUsage | None = None

    @property
    def sessions(self) -> tuple[SessionInfo, ...]:
        with self._lock:
            return self._sessions

    @property
    def nodes(self) -> tuple[GatewayNodeInfo, ...]:
        with self._lock:
            return self._nodes

    @property
    def usage(self) -> GatewayUsageInfo | None:
        with self._lock:
            return self._usage

    @property
    def usage_status(self) -> GatewayUsageStatus | None:
        with self._lock:
            return self._usage_status

    @property
    def usage_cost(self) -> GatewayCostUsage | None:
        with self._lock:
            return self._usage_cost

    # ---------------- sessions ---------------- #

    def replace_sessions(self, sessions: tuple[SessionInfo, ...]) -> tuple[SessionInfo, ...]:
        with self._lock:
            self._sessions = sessions
            return sessions

    def touch_session(
        self,
        key: str,
        is_main: bool,
        current_activity: str | None,
        now: datetime | None = None,
    ) -> tuple[SessionInfo, ...]:
        """Record live activity on one session, creating it when unknown."""
        now = now or datetime.now(UTC)
        with self._lock:
            updated = []
            found = False
            for session in self._sessions:
                if session.key == key:
                    session = replace(
                        session, current_activity=current_activity, last_seen=now
                    )
                    found = True
                updated.append(session)
            if not found:
                updated.append(
                    SessionInfo(
                        key=key,
                        is_main=is_main,
                        status="active",
                        current_activity=current_activity,
                        last_seen=now,
                    )
                )
            self._sessions = sort_sessions(updated)
            return self._sessions

    # ---------------- nodes ---------------- #

    def replace_nodes(self, nodes: tuple[GatewayNodeInfo, ...]) -> tuple[GatewayNodeInfo, ...]:
        with self._lock:
            self._nodes = nodes
            return nodes

    # ---------------- usage ---------------- #

    def update_usage(
        self, transform: Callable[[GatewayUsageInfo], GatewayUsageInfo]
    ) -> GatewayUsageInfo:
        with self._lock:
            self._usage = transform(self._usage or GatewayUsageInfo())
            return self._usage

    def set_usage_status(self, status: GatewayUsageStatus) -> None:
        with self._lock:
            self._usage_status = status

    def set_usage_cost(self, cost: GatewayCostUsage) -> None:
        with self._lock:
            self._usage_cost = cost

    def clear(self) -> None:
        with self._lock:
            self._sessions = ()
            self._nodes = ()
            self._usage = None
            self._usage_status = None
            self._usage_cost = None
