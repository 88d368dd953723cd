from __future__ import annotations

import asyncio
import json
import logging

from stt_orchestrator.common.events import EventChannel
from stt_orchestrator.common.logging import JsonFormatter, TextFormatter
from stt_orchestrator.contracts.events import ProviderSwitchedEvent, StreamingStatusEvent


def test_channel_delivers_in_publish_order_and_filters() -> None:
    ch = EventChannel()
    seen, switched = [], []
    ch.subscribe(seen.append)
    unsubscribe = ch.subscribe(switched.append, "providerSwitched")

    ch.publish(StreamingStatusEvent(is_streaming=True, provider="mock"))
    ch.publish(ProviderSwitchedEvent(source="mock", target="openai_compat", reason="manual"))
    unsubscribe()
    ch.publish(ProviderSwitchedEvent(source="openai_compat", target="mock", reason="manual"))

    assert [e.event_type for e in seen] == ["streamingStatus", "providerSwitched", "providerSwitched"]
    assert len(switched) == 1


def test_failing_handler_does_not_break_others() -> None:
    ch = EventChannel()
    seen = []

    def broken(event) -> None:
        raise RuntimeError("subscriber bug")

    ch.subscribe(broken)
    ch.subscribe(seen.append)
    ch.publish(StreamingStatusEvent(is_streaming=False, provider=None))

    assert len(seen) == 1


def test_stream_queue() -> None:
    async def run():
        ch = EventChannel()
        q = ch.stream("streamingStatus")
        ch.publish(ProviderSwitchedEvent(source=None, target="mock", reason="profile"))
        ch.publish(StreamingStatusEvent(is_streaming=True, provider="mock"))

        event = await asyncio.wait_for(q.get(), timeout=1)
        assert event.is_streaming is True
        assert q.empty()

        ch.close_stream(q)
        ch.publish(StreamingStatusEvent(is_streaming=False, provider="mock"))
        assert q.empty()

    asyncio.run(run())


def test_event_to_dict_has_schema_version() -> None:
    d = ProviderSwitchedEvent(source="a", target="b", reason="fallback").to_dict()
    assert d["event_type"] == "providerSwitched"
    assert d["schema_version"] == "v1"


def _record(payload=None) -> logging.LogRecord:
    rec = logging.LogRecord("stt-orchestrator", logging.INFO, __file__, 1, "chunk_gap", None, None)
    if payload is not None:
        rec.payload = payload
    return rec


def test_json_formatter_includes_payload() -> None:
    out = json.loads(JsonFormatter().format(_record({"seq": 3, "reason": "timeout"})))

    assert out["msg"] == "chunk_gap"
    assert out["payload"] == {"seq": 3, "reason": "timeout"}
    assert out["ts"].endswith("Z")


def test_text_formatter_appends_pairs() -> None:
    line = TextFormatter().format(_record({"seq": 3}))
    assert line.endswith("chunk_gap | seq=3")
    assert TextFormatter().format(_record()).endswith("chunk_gap")
