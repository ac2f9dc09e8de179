from __future__ import annotations

from voice_console.app.conversation.event_log import EventLog
from voice_console.app.realtime.events import EventSource, RealtimeEvent


def _event(event_type: str, source: EventSource = EventSource.SERVER, **fields) -> RealtimeEvent:
    return RealtimeEvent(source, {"type": event_type, **fields})


def test_adjacent_same_type_events_coalesce_into_one_entry() -> None:
    log = EventLog()

    first = _event("response.audio.delta", delta="AAAA")
    log.append(first)
    log.append(_event("response.audio.delta", delta="BBBB"))
    entry = log.append(_event("response.audio.delta", delta="CCCC"))

    assert len(log) == 1
    assert entry.count == 3
    assert entry.event is first


def test_same_type_separated_by_other_event_stays_separate() -> None:
    log = EventLog()

    log.append(_event("input_audio_buffer.append", EventSource.CLIENT, audio="AA"))
    log.append(_event("input_audio_buffer.commit", EventSource.CLIENT))
    log.append(_event("input_audio_buffer.append", EventSource.CLIENT, audio="BB"))

    assert [entry.type for entry in log.entries()] == [
        "input_audio_buffer.append",
        "input_audio_buffer.commit",
        "input_audio_buffer.append",
    ]
    assert [entry.count for entry in log.entries()] == [1, 1, 1]


def test_display_payload_trims_audio_without_mutating_event() -> None:
    log = EventLog()
    entry = log.append(_event("input_audio_buffer.append", EventSource.CLIENT, audio="A" * 64))

    assert entry.display_payload()["audio"] == "[trimmed: 64 bytes]"
    assert entry.event.event["audio"] == "A" * 64


def test_summary_marks_errors_and_counts() -> None:
    log = EventLog()
    log.append(_event("error", error={"message": "boom"}))
    log.append(_event("error", error={"message": "boom again"}))

    assert log.entries()[0].summary() == "error! error (2)"


def test_clear_empties_log() -> None:
    log = EventLog()
    log.append(_event("session.created"))

    log.clear()

    assert log.entries() == []
