#!/usr/bin/env python3
"""Tests for wakechat_client.py — silence detection, wake-word recognition,
audio capture, the WebSocket transport and the client state machine.

No audio hardware or Whisper model is needed: the microphone, recognition
engine and WebSocket are replaced with in-process fakes.

Run: python3 test_wakechat_client.py
  or: pytest test_wakechat_client.py -v
"""

import asyncio
import inspect
import io
import json
import unittest
from unittest.mock import MagicMock

import numpy as np

from wakechat_client import (
    AudioCaptureSession,
    CaptureError,
    ChunkTransport,
    ClientOrchestrator,
    ConsoleRenderer,
    FrequencyAnalyser,
    ListeningMode,
    PcmChunkEncoder,
    REPLY_TIMEOUT_SEC,
    RecognitionError,
    SilenceDetector,
    WakeWordRecognizer,
    average_volume_db,
)
from wakechat_server import PROVIDER_TIMEOUT_SEC
from wakechat_tools import WEATHER_TIMEOUT_SEC


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeMic:
    channels = 1
    sample_rate = 16000

    def __init__(self, fail=False):
        self.fail = fail
        self.opens = 0
        self.closed = False
        self.subscribers = []

    @property
    def is_open(self):
        return self.opens > 0 and not self.closed

    def open(self):
        if self.fail:
            raise CaptureError("Microphone unavailable: no input device")
        self.opens += 1

    def close(self):
        self.closed = True

    def subscribe(self, callback):
        self.subscribers.append(callback)

        def unsubscribe():
            if callback in self.subscribers:
                self.subscribers.remove(callback)

        return unsubscribe

    def emit(self, frame):
        for callback in list(self.subscribers):
            callback(frame)


class FakeEngine:
    """Recognition engine driven by the test: ``result``/``error``/``end``."""

    def __init__(self, fail_start=False):
        self.listeners = []
        self.running = False
        self.starts = 0
        self.stops = 0
        self.fail_start = fail_start

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def start(self):
        if self.fail_start:
            raise RuntimeError("not allowed")
        if self.running:
            raise RuntimeError("already started")
        self.running = True
        self.starts += 1

    def stop(self):
        self.running = False
        self.stops += 1

    def result(self, *transcripts):
        for listener in self.listeners:
            listener.on_result(list(transcripts))

    def error(self, message):
        for listener in self.listeners:
            listener.on_error(RecognitionError(message))

    def end(self):
        self.running = False
        for listener in self.listeners:
            listener.on_end()


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    def push(self, message):
        self.incoming.put_nowait(json.dumps(message))

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def text_frames(self):
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    def binary_frames(self):
        return [m for m in self.sent if isinstance(m, bytes)]


class FakeConnector:
    def __init__(self, fail=False):
        self.fail = fail
        self.sockets = []
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        if self.fail:
            raise OSError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws


def _tone(freq=1000.0, amplitude=16000, n=2048, rate=16000):
    t = np.arange(n) / rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.int16)


def _quiet(n=320):
    return np.zeros(n, dtype=np.int16)


# ===========================================================================
# 1. Level analysis
# ===========================================================================

class TestFrequencyAnalyser(unittest.TestCase):

    def test_silence_is_all_zero(self):
        analyser = FrequencyAnalyser()
        analyser.push(_quiet(2048))
        data = analyser.byte_frequency_data()
        self.assertEqual(len(data), 1024)
        self.assertEqual(int(data.max()), 0)
        self.assertEqual(average_volume_db(data), float("-inf"))

    def test_tone_peaks_at_its_bin(self):
        analyser = FrequencyAnalyser()
        analyser.push(_tone(1000.0))
        for _ in range(10):
            data = analyser.byte_frequency_data()
        self.assertGreater(int(data.max()), 200)
        self.assertAlmostEqual(int(np.argmax(data)), 128, delta=2)

    def test_small_frames_roll_into_window(self):
        analyser = FrequencyAnalyser(fft_size=8)
        analyser.push(np.ones(3, dtype=np.float32))
        analyser.push(np.full(2, 2.0, dtype=np.float32))
        np.testing.assert_array_equal(analyser._samples, [0, 0, 0, 1, 1, 1, 2, 2])

    def test_average_volume_db(self):
        self.assertAlmostEqual(average_volume_db(np.full(4, 255, dtype=np.uint8)), 0.0)
        self.assertAlmostEqual(average_volume_db(np.full(4, 25.5)), -20.0)
        self.assertEqual(average_volume_db(np.array([], dtype=np.uint8)), float("-inf"))


# ===========================================================================
# 2. SilenceDetector
# ===========================================================================

class TestSilenceDetector(unittest.TestCase):

    def _detector(self, **kwargs):
        detector = SilenceDetector(**kwargs)
        self.fired = 0

        def on_silence():
            self.fired += 1

        detector.on_silence(on_silence)
        return detector

    def test_fires_after_duration(self):
        detector = self._detector(threshold_db=-50, duration_ms=2000)
        self.assertFalse(detector.process_level(-60, now=0.0))
        self.assertFalse(detector.process_level(-60, now=1.0))
        self.assertTrue(detector.process_level(-60, now=2.0))
        self.assertEqual(self.fired, 1)

    def test_fires_once_per_span(self):
        detector = self._detector(threshold_db=-50, duration_ms=2000)
        for t in (0.0, 1.0, 2.0, 3.0, 4.5, 6.1, 9.0):
            detector.process_level(-80, now=t)
        self.assertEqual(self.fired, 1)

        # Speech starts a new span
        detector.process_level(-20, now=9.5)
        for t in (10.0, 11.0, 12.0):
            detector.process_level(-80, now=t)
        self.assertEqual(self.fired, 2)

    def test_loud_sample_resets_timer(self):
        detector = self._detector(threshold_db=-50, duration_ms=2000)
        detector.process_level(-60, now=0.0)
        detector.process_level(-60, now=1.5)
        detector.process_level(-40, now=1.6)
        detector.process_level(-60, now=2.0)
        self.assertFalse(detector.process_level(-60, now=3.9))
        self.assertTrue(detector.process_level(-60, now=4.0))

    def test_threshold_is_inclusive_for_sound(self):
        detector = self._detector(threshold_db=-50, duration_ms=0)
        detector.process_level(-50, now=0.0)
        detector.process_level(-50, now=5.0)
        self.assertEqual(self.fired, 0)

    def test_configure(self):
        detector = self._detector()
        detector.configure(-30, 500)
        detector.process_level(-40, now=0.0)
        self.assertTrue(detector.process_level(-40, now=0.5))

    def test_start_is_idempotent(self):
        mic = FakeMic()
        detector = self._detector()
        detector.start(mic)
        detector.start(mic)
        self.assertTrue(detector.is_running)
        self.assertEqual(len(mic.subscribers), 1)
        detector.stop()
        self.assertFalse(detector.is_running)
        self.assertEqual(mic.subscribers, [])
        detector.stop()

    def test_start_without_stream(self):
        detector = self._detector()
        detector.start(None)
        self.assertFalse(detector.is_running)
        silent = MagicMock(channels=0)
        detector.start(silent)
        self.assertFalse(detector.is_running)
        silent.subscribe.assert_not_called()

    def test_frames_from_stream(self):
        clock = FakeClock(0.0)
        mic = FakeMic()
        detector = self._detector(clock=clock)
        detector.start(mic)
        mic.emit(_quiet())
        clock.now = 2.5
        mic.emit(_quiet())
        self.assertEqual(self.fired, 1)

    def test_no_callback_after_stop(self):
        clock = FakeClock(0.0)
        mic = FakeMic()
        detector = self._detector(clock=clock)
        detector.start(mic)
        mic.emit(_quiet())
        detector.stop()
        clock.now = 5.0
        mic.emit(_quiet())
        self.assertEqual(self.fired, 0)


# ===========================================================================
# 3. WakeWordRecognizer
# ===========================================================================

class TestWakeWordRecognizer(unittest.TestCase):

    def _recognizer(self, engine, wake_word="hey assistant", **kwargs):
        kwargs.setdefault("restart_delay", 0.01)
        kwargs.setdefault("error_restart_delay", 0.2)
        recognizer = WakeWordRecognizer(engine, wake_word=wake_word, **kwargs)
        self.heard = []
        self.enabled_at_callback = []

        def on_wake(transcript):
            self.heard.append(transcript)
            self.enabled_at_callback.append(recognizer.enabled)

        recognizer.on_wake_word(on_wake)
        return recognizer

    def test_match_fires_once_after_end(self):
        async def _run():
            engine = FakeEngine()
            recognizer = self._recognizer(engine)
            recognizer.set_enabled(True)
            self.assertEqual(engine.starts, 1)

            engine.result("hello world")
            self.assertEqual(self.heard, [])
            engine.result("hello world", "Hey Assistant what time is it")
            self.assertEqual(engine.stops, 1)
            self.assertFalse(recognizer.enabled)
            self.assertEqual(self.heard, [])

            engine.end()
            self.assertEqual(self.heard, ["hey assistant what time is it"])
            self.assertEqual(self.enabled_at_callback, [False])

            # Disabled: no automatic restart
            await asyncio.sleep(0.05)
            self.assertEqual(engine.starts, 1)
            engine.result("hey assistant")
            engine.end()
            self.assertEqual(len(self.heard), 1)

        asyncio.run(_run())

    def test_non_latin_wake_word(self):
        async def _run():
            engine = FakeEngine()
            recognizer = self._recognizer(engine, wake_word="привет ассистент")
            recognizer.set_enabled(True)
            engine.result("Привет Ассистент, какая погода")
            engine.end()
            self.assertEqual(self.heard, ["привет ассистент, какая погода"])

        asyncio.run(_run())

    def test_only_last_slot_checked(self):
        async def _run():
            engine = FakeEngine()
            recognizer = self._recognizer(engine)
            recognizer.set_enabled(True)
            engine.result("hey assistant", "something else")
            self.assertTrue(recognizer.enabled)
            self.assertEqual(engine.stops, 0)

        asyncio.run(_run())

    def test_empty_wake_word_never_matches(self):
        async def _run():
            engine = FakeEngine()
            recognizer = self._recognizer(engine, wake_word="  ")
            recognizer.set_enabled(True)
            engine.result("anything")
            self.assertTrue(recognizer.enabled)

        asyncio.run(_run())

    def test_set_wake_word(self):
        async def _run():
            engine = FakeEngine()
            recognizer = self._recognizer(engine)
            recognizer.set_wake_word(" computer ")
            recognizer.set_enabled(True)
            engine.result("ok computer")
            engine.end()
            self.assertEqual(self.heard, ["ok computer"])

        asyncio.run(_run())

    def test_restart_after_end(self):
        async def _run():
            engine = FakeEngine()
            recognizer = self._recognizer(engine, restart_delay=0.05)
            recognizer.set_enabled(True)
            engine.end()
            self.assertFalse(recognizer.running)
            await asyncio.sleep(0.01)
            self.assertEqual(engine.starts, 1)
            await asyncio.sleep(0.1)
            self.assertEqual(engine.starts, 2)
            self.assertTrue(recognizer.running)

        asyncio.run(_run())

    def test_error_uses_longer_delay(self):
        async def _run():
            engine = FakeEngine()
            recognizer = self._recognizer(engine, restart_delay=0.01, error_restart_delay=0.2)
            recognizer.set_enabled(True)
            engine.error("network")
            engine.end()
            await asyncio.sleep(0.08)
            self.assertEqual(engine.starts, 1)
            await asyncio.sleep(0.25)
            self.assertEqual(engine.starts, 2)

        asyncio.run(_run())

    def test_disable_cancels_restart(self):
        async def _run():
            engine = FakeEngine()
            recognizer = self._recognizer(engine, restart_delay=0.02)
            recognizer.set_enabled(True)
            engine.end()
            recognizer.set_enabled(False)
            await asyncio.sleep(0.06)
            self.assertEqual(engine.starts, 1)

        asyncio.run(_run())

    def test_start_failure_retried(self):
        async def _run():
            engine = FakeEngine(fail_start=True)
            recognizer = self._recognizer(engine, error_restart_delay=0.02)
            with self.assertLogs("wakechat_client", level="ERROR"):
                recognizer.set_enabled(True)
            self.assertFalse(recognizer.running)
            engine.fail_start = False
            await asyncio.sleep(0.06)
            self.assertTrue(recognizer.running)

        asyncio.run(_run())

    def test_missing_microphone_logged_once(self):
        async def _run():
            engine = FakeEngine()
            engine.start = MagicMock(side_effect=CaptureError("no input device"))
            recognizer = self._recognizer(engine, error_restart_delay=0.02)
            with self.assertLogs("wakechat_client", level="ERROR") as logs:
                recognizer.set_enabled(True)
                await asyncio.sleep(0.07)
            missing = [r for r in logs.records if "No microphone" in r.getMessage()]
            self.assertEqual(len(missing), 1)
            self.assertEqual(len(logs.records), 1)
            self.assertGreaterEqual(engine.start.call_count, 3)
            self.assertFalse(recognizer.running)
            recognizer.set_enabled(False)

        asyncio.run(_run())

    def test_resume_after_recording(self):
        async def _run():
            engine = FakeEngine()
            recognizer = self._recognizer(engine)
            recognizer.set_enabled(True)
            engine.result("hey assistant")
            engine.end()
            recognizer.resume_after_recording()
            self.assertTrue(recognizer.enabled)
            self.assertEqual(engine.starts, 2)

        asyncio.run(_run())


# ===========================================================================
# 4. Audio capture
# ===========================================================================

class TestPcmChunkEncoder(unittest.TestCase):

    def test_periodic_and_final_chunks(self):
        async def _run():
            mic = FakeMic()
            chunks = []

            async def on_chunk(data):
                chunks.append(data)

            encoder = PcmChunkEncoder(mic, on_chunk, interval_ms=20)
            encoder.start()
            mic.emit(np.array([1, 2], dtype=np.int16))
            await asyncio.sleep(0.05)
            self.assertEqual(chunks, [np.array([1, 2], dtype=np.int16).tobytes()])

            mic.emit(np.array([3], dtype=np.int16))
            await encoder.finalize()
            self.assertTrue(encoder.finished.is_set())
            self.assertEqual(chunks[-1], np.array([3], dtype=np.int16).tobytes())
            self.assertEqual(encoder.chunks_emitted, 2)
            self.assertEqual(mic.subscribers, [])

        asyncio.run(_run())


class TestAudioCaptureSession(unittest.TestCase):

    def test_streaming_session(self):
        async def _run():
            mic = FakeMic()
            chunks = []

            async def on_chunk(data):
                chunks.append(data)

            capture = AudioCaptureSession(mic, on_chunk)
            await capture.start()
            self.assertTrue(capture.is_active)
            self.assertIs(capture.stream, mic)
            mic.emit(_tone(n=320))
            mic.emit(_tone(n=320))
            audio = await capture.stop()

            self.assertEqual(audio, b"")
            self.assertEqual(b"".join(chunks), _tone(n=320).tobytes() * 2)
            self.assertFalse(capture.is_active)
            self.assertIsNone(capture.stream)
            # Microphone stays warm between sessions
            self.assertFalse(mic.closed)

        asyncio.run(_run())

    def test_buffered_session(self):
        async def _run():
            mic = FakeMic()
            capture = AudioCaptureSession(mic)
            await capture.start()
            mic.emit(np.array([7, 8, 9], dtype=np.int16))
            audio = await capture.stop()
            self.assertEqual(audio, np.array([7, 8, 9], dtype=np.int16).tobytes())

        asyncio.run(_run())

    def test_double_start_ignored(self):
        async def _run():
            mic = FakeMic()
            capture = AudioCaptureSession(mic)
            await capture.start()
            with self.assertLogs("wakechat_client", level="WARNING"):
                await capture.start()
            self.assertEqual(capture.encoders_created, 1)
            await capture.stop()

            await capture.start()
            self.assertEqual(capture.encoders_created, 2)
            await capture.stop()

        asyncio.run(_run())

    def test_capture_error(self):
        async def _run():
            capture = AudioCaptureSession(FakeMic(fail=True))
            with self.assertRaises(CaptureError):
                await capture.start()
            self.assertFalse(capture.is_active)
            self.assertEqual(await capture.stop(), b"")

        asyncio.run(_run())

    def test_release_closes_microphone(self):
        mic = FakeMic()
        AudioCaptureSession(mic).release()
        self.assertTrue(mic.closed)


# ===========================================================================
# 5. ChunkTransport
# ===========================================================================

class TestChunkTransport(unittest.TestCase):

    def _transport(self, connector, **kwargs):
        kwargs.setdefault("reconnect_delay", 0.02)
        return ChunkTransport("ws://test/ws", connect=connector, **kwargs)

    def test_connect_is_idempotent(self):
        async def _run():
            connector = FakeConnector()
            transport = self._transport(connector)
            transport.connect()
            transport.connect()
            await asyncio.sleep(0.01)
            transport.connect()
            self.assertEqual(len(connector.urls), 1)
            self.assertEqual(transport.connections_opened, 1)
            self.assertTrue(transport.is_open)
            hello = connector.sockets[0].text_frames()[0]
            self.assertEqual(hello, {"type": "session.update",
                                     "session": {"format": "pcm_s16le", "sample_rate": 16000}})
            await transport.close()

        asyncio.run(_run())

    def test_send_when_closed_drops_and_connects(self):
        async def _run():
            connector = FakeConnector()
            transport = self._transport(connector)
            self.assertFalse(await transport.send_chunk(b"\x00\x01"))
            self.assertFalse(await transport.send_end_of_utterance())
            await asyncio.sleep(0.01)
            self.assertEqual(len(connector.urls), 1)
            self.assertEqual(connector.sockets[0].binary_frames(), [])

            self.assertTrue(await transport.send_chunk(b"\x00\x01"))
            self.assertTrue(await transport.send_end_of_utterance())
            ws = connector.sockets[0]
            self.assertEqual(ws.binary_frames(), [b"\x00\x01"])
            self.assertEqual(ws.text_frames()[-1], {"type": "end"})
            await transport.close()

        asyncio.run(_run())

    def test_routes_by_type(self):
        async def _run():
            connector = FakeConnector()
            transport = self._transport(connector)
            got = {"response": [], "done": []}
            transport.on("response", got["response"].append)
            transport.on("done", got["done"].append)
            transport.connect()
            await asyncio.sleep(0.01)

            ws = connector.sockets[0]
            ws.push({"type": "response", "text": "Hi"})
            ws.push({"type": "mystery"})
            ws.incoming.put_nowait("{not json")
            ws.push({"type": "done"})
            await asyncio.sleep(0.01)

            self.assertEqual(got["response"], [{"type": "response", "text": "Hi"}])
            self.assertEqual(got["done"], [{"type": "done"}])
            await transport.close()

        asyncio.run(_run())

    def test_reconnects_after_close(self):
        async def _run():
            connector = FakeConnector()
            transport = self._transport(connector, reconnect_delay=0.02)
            transport.connect()
            await asyncio.sleep(0.01)
            connector.sockets[0].incoming.put_nowait(None)
            await asyncio.sleep(0.01)
            self.assertFalse(transport.is_open)
            await asyncio.sleep(0.05)
            self.assertEqual(transport.connections_opened, 2)
            self.assertTrue(transport.is_open)
            await transport.close()

        asyncio.run(_run())

    def test_connection_failure_reported(self):
        async def _run():
            connector = FakeConnector(fail=True)
            transport = self._transport(connector, max_reconnect_attempts=2)
            errors = []
            transport.on("error", errors.append)
            transport.connect()
            await asyncio.sleep(0.15)
            self.assertEqual(len(connector.urls), 2)
            self.assertEqual(errors[0]["message"], "WebSocket connection error")
            self.assertFalse(transport.is_open)
            await transport.close()

        asyncio.run(_run())

    def test_close_stops_reconnecting(self):
        async def _run():
            connector = FakeConnector()
            transport = self._transport(connector)
            transport.connect()
            await asyncio.sleep(0.01)
            await transport.close()
            self.assertTrue(connector.sockets[0].closed)
            await asyncio.sleep(0.05)
            self.assertEqual(len(connector.urls), 1)

        asyncio.run(_run())


# ===========================================================================
# 6. ClientOrchestrator
# ===========================================================================

class _Rig:
    """Real components wired to fake hardware and a fake server."""

    def __init__(self, mic=None, reply_timeout=5.0):
        self.clock = FakeClock(0.0)
        self.mic = mic or FakeMic()
        self.engine = FakeEngine()
        self.connector = FakeConnector()
        self.recognizer = WakeWordRecognizer(
            self.engine, wake_word="hey assistant", restart_delay=0.01, error_restart_delay=0.01
        )
        self.transport = ChunkTransport("ws://test/ws", connect=self.connector, reconnect_delay=0.02)
        self.capture = AudioCaptureSession(self.mic, self.transport.send_chunk, interval_ms=20)
        self.detector = SilenceDetector(clock=self.clock)
        self.cue = MagicMock()
        self.modes = []
        self.errors = []
        self.transcriptions = []
        self.responses = []
        self.orchestrator = ClientOrchestrator(
            self.recognizer, self.capture, self.detector, self.transport,
            cue=self.cue,
            reply_timeout=reply_timeout,
            on_mode_change=self.modes.append,
            on_transcription=self.transcriptions.append,
            on_response=self.responses.append,
            on_error=self.errors.append,
        )

    @property
    def ws(self):
        return self.connector.sockets[-1]

    async def listen(self):
        await self.orchestrator.start_listening()
        await asyncio.sleep(0.01)

    async def wake(self):
        self.engine.result("hey assistant")
        self.engine.end()
        await self.orchestrator.settle()

    async def go_silent(self):
        # Enough silence to flush the analyser window and its smoothing
        for _ in range(60):
            self.mic.emit(_quiet(2048))
        self.clock.now += 2.5
        self.mic.emit(_quiet())
        await self.orchestrator.settle()

    async def server_done(self):
        self.ws.push({"type": "done"})
        await asyncio.sleep(0.01)
        await self.orchestrator.settle()


class TestClientOrchestrator(unittest.TestCase):

    def test_full_cycle(self):
        async def _run():
            rig = _Rig()
            orch = rig.orchestrator
            self.assertEqual(orch.mode, ListeningMode.IDLE)

            await rig.listen()
            self.assertEqual(orch.mode, ListeningMode.WAKE_WORD_LISTENING)
            self.assertTrue(rig.engine.running)
            self.assertTrue(rig.transport.is_open)

            await rig.wake()
            self.assertEqual(orch.mode, ListeningMode.RECORDING)
            rig.cue.assert_called_once()
            self.assertFalse(rig.engine.running)
            self.assertFalse(rig.recognizer.enabled)
            self.assertTrue(rig.capture.is_active)
            self.assertTrue(rig.detector.is_running)

            rig.mic.emit(_tone(n=320))
            await rig.go_silent()
            self.assertEqual(orch.mode, ListeningMode.PROCESSING)
            self.assertFalse(rig.detector.is_running)
            self.assertFalse(rig.capture.is_active)
            self.assertEqual(rig.ws.text_frames()[-1], {"type": "end"})
            audio = b"".join(rig.ws.binary_frames())
            self.assertTrue(audio.startswith(_tone(n=320).tobytes()))

            rig.ws.push({"type": "transcription", "text": "what time is it"})
            rig.ws.push({"type": "response", "text": "Noon."})
            await rig.server_done()
            self.assertEqual(rig.transcriptions, ["what time is it"])
            self.assertEqual(rig.responses, ["Noon."])
            self.assertEqual(orch.mode, ListeningMode.WAKE_WORD_LISTENING)
            self.assertTrue(rig.recognizer.enabled)
            self.assertEqual(rig.engine.starts, 2)

            self.assertEqual(rig.modes, [
                ListeningMode.WAKE_WORD_LISTENING,
                ListeningMode.RECORDING,
                ListeningMode.PROCESSING,
                ListeningMode.WAKE_WORD_LISTENING,
            ])
            await orch.stop_listening()
            self.assertEqual(orch.mode, ListeningMode.IDLE)
            self.assertFalse(rig.engine.running)
            await rig.transport.close()

        asyncio.run(_run())

    def test_capture_error_returns_to_idle(self):
        async def _run():
            rig = _Rig(mic=FakeMic(fail=True))
            await rig.listen()
            await rig.wake()
            self.assertEqual(rig.orchestrator.mode, ListeningMode.IDLE)
            self.assertEqual(rig.modes[-1], ListeningMode.IDLE)
            self.assertIn("no input device", rig.errors[0])
            self.assertFalse(rig.recognizer.enabled)
            self.assertFalse(rig.detector.is_running)
            await rig.transport.close()

        asyncio.run(_run())

    def test_reply_timeout(self):
        async def _run():
            rig = _Rig(reply_timeout=0.05)
            await rig.listen()
            await rig.wake()
            await rig.orchestrator.toggle()
            self.assertEqual(rig.orchestrator.mode, ListeningMode.PROCESSING)
            with self.assertLogs("wakechat_client", level="WARNING"):
                await asyncio.sleep(0.1)
                await rig.orchestrator.settle()
            self.assertEqual(rig.orchestrator.mode, ListeningMode.WAKE_WORD_LISTENING)
            self.assertTrue(rig.recognizer.enabled)
            await rig.orchestrator.stop_listening()
            await rig.transport.close()

        asyncio.run(_run())

    def test_reply_timeout_outlasts_slowest_server_turn(self):
        # transcription + completion + tool + follow-up completion
        slowest_turn = 3 * PROVIDER_TIMEOUT_SEC + WEATHER_TIMEOUT_SEC
        self.assertGreater(REPLY_TIMEOUT_SEC, slowest_turn)
        default = inspect.signature(ClientOrchestrator).parameters["reply_timeout"].default
        self.assertEqual(default, REPLY_TIMEOUT_SEC)

    def test_late_done_ignored(self):
        async def _run():
            rig = _Rig()
            await rig.listen()
            await rig.wake()
            await rig.go_silent()
            await rig.orchestrator.stop_listening()
            await rig.server_done()
            self.assertEqual(rig.orchestrator.mode, ListeningMode.IDLE)
            self.assertFalse(rig.recognizer.enabled)
            await rig.transport.close()

        asyncio.run(_run())

    def test_wake_word_ignored_when_idle(self):
        async def _run():
            rig = _Rig()
            await rig.listen()
            rig.engine.result("hey assistant")
            await rig.orchestrator.stop_listening()
            rig.engine.end()
            await rig.orchestrator.settle()
            self.assertEqual(rig.orchestrator.mode, ListeningMode.IDLE)
            self.assertFalse(rig.capture.is_active)
            await rig.transport.close()

        asyncio.run(_run())

    def test_toggle(self):
        async def _run():
            rig = _Rig()
            orch = rig.orchestrator
            await orch.toggle()
            self.assertEqual(orch.mode, ListeningMode.WAKE_WORD_LISTENING)
            await orch.toggle()
            self.assertEqual(orch.mode, ListeningMode.IDLE)
            self.assertFalse(rig.recognizer.enabled)

            await rig.listen()
            await rig.wake()
            await orch.toggle()
            self.assertEqual(orch.mode, ListeningMode.PROCESSING)
            await orch.toggle()
            self.assertEqual(orch.mode, ListeningMode.IDLE)
            await rig.transport.close()

        asyncio.run(_run())


# ===========================================================================
# 7. ConsoleRenderer
# ===========================================================================

class TestConsoleRenderer(unittest.TestCase):

    def _render(self, fn):
        out = io.StringIO()
        fn(ConsoleRenderer(tty=False, out=out))
        return out.getvalue()

    def test_turn(self):
        def turn(r):
            r.mode_changed(ListeningMode.PROCESSING)
            r.transcription(" what time is it ")
            r.response("It is ")
            r.response("noon.")
            r.mode_changed(ListeningMode.WAKE_WORD_LISTENING)

        self.assertEqual(self._render(turn), (
            "(processing...)\n"
            "❯ what time is it\n"
            "⏺ It is noon.\n"
            "(waiting for wake word...)\n"
        ))

    def test_error(self):
        self.assertEqual(self._render(lambda r: r.error("boom")), "error: boom\n")


if __name__ == "__main__":
    unittest.main()
