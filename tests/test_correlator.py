import asyncio

import pytest

from rxclaw.gateway.correlator import FALLBACKS, RequestCorrelator, is_unknown_method_error
from rxclaw.mechanism import TransportError


class TestRequestCorrelator:
    """Every pending entry is resolved exactly once."""

    def test_track_and_take(self):
        correlator = RequestCorrelator()

        pending = correlator.track("sessions.list")

        assert len(correlator) == 1
        assert correlator.take(pending.id) is pending
        assert correlator.take(pending.id) is None
        assert len(correlator) == 0

    def test_generated_ids_are_unique(self):
        correlator = RequestCorrelator()

        ids = {correlator.track("health").id for _ in range(50)}

        assert len(ids) == 50

    def test_duplicate_explicit_id_rejected(self):
        correlator = RequestCorrelator()
        correlator.track("health", request_id="fixed")

        with pytest.raises(ValueError):
            correlator.track("usage", request_id="fixed")

    def test_take_unknown_or_missing_id(self):
        correlator = RequestCorrelator()

        assert correlator.take("nope") is None
        assert correlator.take(None) is None

    def test_discard_cancels_future(self):
        async def scenario():
            correlator = RequestCorrelator()
            future = asyncio.get_running_loop().create_future()
            pending = correlator.track("chat.send", future=future)
            correlator.discard(pending.id)
            return correlator, future

        correlator, future = asyncio.run(scenario())

        assert len(correlator) == 0
        assert future.cancelled()

    def test_clear_fails_waiters(self):
        async def scenario():
            correlator = RequestCorrelator()
            future = asyncio.get_running_loop().create_future()
            correlator.track("usage.cost", future=future)
            correlator.track("health")
            dropped = correlator.clear("connection closed")
            with pytest.raises(TransportError, match="usage.cost: connection closed"):
                await future
            return correlator, dropped

        correlator, dropped = asyncio.run(scenario())

        assert dropped == 2
        assert len(correlator) == 0


class TestUnsupportedMethods:
    def test_mark_and_reset(self):
        correlator = RequestCorrelator()
        assert correlator.is_supported("node.list")

        correlator.mark_unsupported("node.list")
        assert not correlator.is_supported("node.list")

        correlator.reset_unsupported()
        assert correlator.is_supported("node.list")

    def test_fallback_table(self):
        correlator = RequestCorrelator()

        assert FALLBACKS == {"usage.status": "usage"}
        assert correlator.fallback_for("usage.status") == "usage"
        assert correlator.fallback_for("usage.cost") is None

    @pytest.mark.parametrize(
        "message, expected",
        [
            ("unknown method: usage.status", True),
            ("Unknown Method 'node.list'", True),
            ("permission denied", False),
            ("", False),
            (None, False),
        ],
    )
    def test_unknown_method_detection(self, message, expected):
        assert is_unknown_method_error(message) is expected
