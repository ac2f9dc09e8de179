from __future__ import annotations

import pytest

import voice_console.app.audio.capture as capture_module
from shared.errors import DeviceError
from tests.unit.voice_console._fakes import FakeSounddevice, pcm, run, wait_for
from voice_console.app.audio.capture import AudioCapture, AudioFrame, CaptureStatus


def _capture(monkeypatch, **device_kwargs) -> tuple[AudioCapture, FakeSounddevice]:
    device = FakeSounddevice(**device_kwargs)
    monkeypatch.setattr(capture_module, "sd", device)
    return AudioCapture(sample_rate=24000, frame_samples=4), device


def test_frames_are_delivered_in_capture_order(monkeypatch) -> None:
    async def scenario():
        capture, device = _capture(monkeypatch)
        frames: list[AudioFrame] = []

        async def on_frame(frame: AudioFrame) -> None:
            frames.append(frame)

        await capture.begin()
        await capture.record(on_frame)
        stream = device.input_streams[0]
        for value in (1, 2, 3):
            stream.callback(pcm(4, value), 4, None, None)
        await wait_for(lambda: len(frames) == 3)
        await capture.end()
        return frames, stream

    frames, stream = run(scenario())

    assert [frame.samples()[0] for frame in frames] == [1, 2, 3]
    assert all(frame.sample_count == 4 for frame in frames)
    assert stream.kwargs["blocksize"] == 4
    assert stream.closed is True


def test_pause_delivers_frames_captured_before_it(monkeypatch) -> None:
    async def scenario():
        capture, device = _capture(monkeypatch)
        frames: list[AudioFrame] = []

        async def on_frame(frame: AudioFrame) -> None:
            frames.append(frame)

        await capture.begin()
        await capture.record(on_frame)
        device.input_streams[0].callback(pcm(4, 9), 4, None, None)
        await capture.pause()
        delivered = len(frames)
        device.input_streams[0].callback(pcm(4, 5), 4, None, None)
        await capture.end()
        return capture, delivered, len(frames)

    capture, delivered, total = run(scenario())

    assert delivered == 1
    assert total == 1
    assert capture.status is CaptureStatus.ENDED


def test_record_twice_raises(monkeypatch) -> None:
    async def scenario():
        capture, _ = _capture(monkeypatch)

        async def on_frame(frame: AudioFrame) -> None:
            return None

        await capture.begin()
        await capture.record(on_frame)
        try:
            with pytest.raises(RuntimeError, match="already recording"):
                await capture.record(on_frame)
        finally:
            await capture.end()

    run(scenario())


def test_record_before_begin_raises(monkeypatch) -> None:
    capture, _ = _capture(monkeypatch)

    async def on_frame(frame: AudioFrame) -> None:
        return None

    with pytest.raises(RuntimeError, match="not begun"):
        run(capture.record(on_frame))


def test_begin_failure_raises_device_error(monkeypatch) -> None:
    capture, _ = _capture(monkeypatch, fail_input=True)

    with pytest.raises(DeviceError):
        run(capture.begin())

    assert capture.status is CaptureStatus.ENDED


def test_begin_without_backend_raises_device_error(monkeypatch) -> None:
    monkeypatch.setattr(capture_module, "sd", None)

    with pytest.raises(DeviceError):
        run(AudioCapture().begin())


def test_handler_failure_does_not_stop_delivery(monkeypatch) -> None:
    async def scenario():
        capture, device = _capture(monkeypatch)
        seen: list[int] = []

        async def on_frame(frame: AudioFrame) -> None:
            seen.append(int(frame.samples()[0]))
            if len(seen) == 1:
                raise ValueError("boom")

        await capture.begin()
        await capture.record(on_frame)
        device.input_streams[0].callback(pcm(4, 1), 4, None, None)
        device.input_streams[0].callback(pcm(4, 2), 4, None, None)
        await wait_for(lambda: len(seen) == 2)
        await capture.end()
        return seen

    assert run(scenario()) == [1, 2]
