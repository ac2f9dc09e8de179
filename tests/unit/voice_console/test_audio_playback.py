from __future__ import annotations

import pytest

import voice_console.app.audio.playback as playback_module
from shared.errors import DeviceError
from tests.unit.voice_console._fakes import FakeSounddevice, pcm, render, run
from voice_console.app.audio.playback import AudioPlayback


def _connected_playback(monkeypatch, block_samples: int = 4) -> tuple[AudioPlayback, FakeSounddevice]:
    device = FakeSounddevice()
    monkeypatch.setattr(playback_module, "sd", device)
    playback = AudioPlayback(sample_rate=24000, block_samples=block_samples)
    run(playback.connect())
    return playback, device


def test_connect_opens_mono_int16_stream(monkeypatch) -> None:
    playback, device = _connected_playback(monkeypatch)

    stream = device.output_streams[0]
    assert stream.started is True
    assert stream.kwargs["samplerate"] == 24000
    assert stream.kwargs["channels"] == 1
    assert stream.kwargs["dtype"] == "int16"
    assert playback.is_connected() is True


def test_connect_without_backend_raises_device_error(monkeypatch) -> None:
    monkeypatch.setattr(playback_module, "sd", None)

    with pytest.raises(DeviceError):
        run(AudioPlayback().connect())


def test_connect_failure_raises_device_error(monkeypatch) -> None:
    monkeypatch.setattr(playback_module, "sd", FakeSounddevice(fail_output=True))
    playback = AudioPlayback()

    with pytest.raises(DeviceError):
        run(playback.connect())

    assert playback.is_connected() is False


def test_tracks_render_in_arrival_order(monkeypatch) -> None:
    playback, device = _connected_playback(monkeypatch)
    playback.add_samples("item_a", pcm(2, 1))
    playback.complete_track("item_a")
    playback.add_samples("item_b", pcm(2, 2))

    rendered = render(device.output_streams[0], 4)

    assert rendered == pcm(2, 1) + pcm(2, 2)


def test_underrun_is_zero_filled(monkeypatch) -> None:
    playback, device = _connected_playback(monkeypatch)
    playback.add_samples("item_a", pcm(1, 7))

    rendered = render(device.output_streams[0], 4)

    assert rendered == pcm(1, 7) + bytes(6)
    assert playback.is_playing() is False


def test_live_track_keeps_position_across_underrun(monkeypatch) -> None:
    playback, device = _connected_playback(monkeypatch)
    stream = device.output_streams[0]
    playback.add_samples("item_a", pcm(2, 3))
    render(stream, 4)
    playback.add_samples("item_a", pcm(1, 4))

    offset = playback.interrupt()

    assert offset is not None
    assert offset.track_id == "item_a"
    assert offset.sample_offset == 2


def test_interrupt_reports_rendered_offset_within_appended(monkeypatch) -> None:
    playback, device = _connected_playback(monkeypatch)
    playback.add_samples("item_a", pcm(10))
    render(device.output_streams[0], 4)

    offset = playback.interrupt()

    assert offset is not None
    assert offset.sample_offset == 4
    assert offset.sample_offset <= 10
    assert offset.seconds == pytest.approx(4 / 24000)


def test_interrupted_track_drops_later_chunks(monkeypatch) -> None:
    playback, device = _connected_playback(monkeypatch)
    playback.add_samples("item_a", pcm(4))
    playback.interrupt()

    accepted = playback.add_samples("item_a", pcm(4))
    rendered = render(device.output_streams[0], 4)

    assert accepted is False
    assert rendered == bytes(8)


def test_interrupt_when_idle_returns_none(monkeypatch) -> None:
    playback, _ = _connected_playback(monkeypatch)

    assert playback.interrupt() is None


def test_completed_track_is_released_once_drained(monkeypatch) -> None:
    playback, device = _connected_playback(monkeypatch)
    playback.add_samples("item_a", pcm(4))
    playback.complete_track("item_a")

    render(device.output_streams[0], 4)

    assert playback.interrupt() is None


def test_close_releases_stream(monkeypatch) -> None:
    playback, device = _connected_playback(monkeypatch)

    run(playback.close())
    run(playback.close())

    assert device.output_streams[0].closed is True
    assert playback.is_connected() is False


def test_completing_interrupted_track_forgets_it(monkeypatch) -> None:
    playback, _ = _connected_playback(monkeypatch)
    playback.add_samples("item_a", pcm(4))
    playback.add_samples("item_b", pcm(4))
    playback.interrupt()

    playback.complete_track("item_a")
    playback.complete_track("item_b")

    assert playback._interrupted == set()
