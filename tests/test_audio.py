"""
tests/test_audio.py
====================
Audio Layer Tests — sources, mixer, quality monitor, WAV encoder

Test categories:
    1. Encoder (valid WAV, empty input, fallbacks, never raises)
    2. Mixing (gains, zero padding, clipping)
    3. Shared audio buffer
    4. Quality monitor (silence floor, throttling, pause)
    5. Source manager (partial acquisition, fatal zero, release no-op, probe)
    6. Mixer clocking and pause dropping

All tests are offline — no audio devices are opened.
"""

import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from helpers import FakeCaptureBackend, FakeClock, silent_block, speech_block

from voicestream.audio.encoder import WAV_HEADER_BYTES, decode_wav, empty_wav, encode
from voicestream.audio.mixer import AudioBuffer, AudioMixer, block_level, mix
from voicestream.audio.quality import QualityMonitor, analyze_samples, byte_frequency_data
from voicestream.audio.sources import AudioSourceManager, SourceKind
from voicestream.config import StreamingConfig
from voicestream.errors import AcquisitionError, DeviceUnavailable, PermissionDenied
from voicestream.scheduler import SilenceTracker


# ===================================================================
# 1. Encoder
# ===================================================================

class TestEncoder(unittest.TestCase):

    def test_silent_window_encodes_to_16bit_wav(self):
        data = encode(np.zeros(1000, dtype=np.float32), 16000, 1)
        self.assertEqual(data[:4], b"RIFF")
        self.assertEqual(data[8:12], b"WAVE")
        self.assertEqual(len(data), WAV_HEADER_BYTES + 2000)

    def test_round_trip_preserves_samples(self):
        samples = np.array([0.0, 0.5, -0.5, 1.0, -1.0], dtype=np.float32)
        decoded, rate, channels = decode_wav(encode(samples, 16000, 1))
        self.assertEqual(rate, 16000)
        self.assertEqual(channels, 1)
        np.testing.assert_allclose(decoded, samples, atol=1e-3)

    def test_out_of_range_samples_are_clamped(self):
        decoded, _, _ = decode_wav(encode(np.array([3.0, -3.0], dtype=np.float32)))
        self.assertAlmostEqual(float(decoded[0]), 32767 / 32768, places=4)
        self.assertAlmostEqual(float(decoded[1]), -1.0, places=4)

    def test_empty_input_yields_valid_empty_wav(self):
        data = encode(np.zeros(0, dtype=np.float32))
        self.assertEqual(len(data), WAV_HEADER_BYTES)
        decoded, rate, _ = decode_wav(data)
        self.assertEqual(decoded.size, 0)
        self.assertEqual(rate, 16000)

    def test_empty_wav_header_is_decodable(self):
        decoded, rate, channels = decode_wav(empty_wav(8000, 2))
        self.assertEqual(decoded.size, 0)
        self.assertEqual(rate, 8000)
        self.assertEqual(channels, 2)

    def test_nan_samples_fall_back_to_empty_wav(self):
        data = encode(np.array([0.1, float("nan")], dtype=np.float32))
        self.assertEqual(len(data), WAV_HEADER_BYTES)

    def test_invalid_sample_rate_never_raises(self):
        data = encode(np.zeros(10, dtype=np.float32), sample_rate=0)
        self.assertEqual(data[:4], b"RIFF")

    def test_existing_container_passes_through(self):
        wav = encode(np.zeros(100, dtype=np.float32))
        self.assertEqual(encode(wav), wav)

    def test_unencodable_raw_bytes_are_re_emitted(self):
        raw = b"\x01\x02\x03"  # odd length, not frame aligned
        self.assertEqual(encode(raw), raw)

    def test_stereo_frames(self):
        frames = np.zeros((50, 2), dtype=np.float32)
        data = encode(frames, 16000, 2)
        _, _, channels = decode_wav(data)
        self.assertEqual(channels, 2)
        self.assertEqual(len(data), WAV_HEADER_BYTES + 50 * 2 * 2)


# ===================================================================
# 2. Mixing
# ===================================================================

class TestMix(unittest.TestCase):

    def test_weighted_sum(self):
        out = mix([np.full(4, 0.5), np.full(4, 0.5)], [0.8, 0.6])
        np.testing.assert_allclose(out, np.full(4, 0.7), atol=1e-6)

    def test_shorter_blocks_are_zero_padded(self):
        out = mix([np.full(4, 0.5), np.full(2, 0.5)], [1.0, 1.0])
        np.testing.assert_allclose(out, [1.0, 1.0, 0.5, 0.5], atol=1e-6)

    def test_result_is_clipped(self):
        out = mix([np.full(3, 0.9), np.full(3, 0.9)], [1.0, 1.0])
        self.assertTrue(np.all(out <= 1.0))

    def test_mismatched_gains_raise(self):
        with self.assertRaises(ValueError):
            mix([np.zeros(2)], [1.0, 1.0])

    def test_block_level(self):
        self.assertEqual(block_level(np.zeros(0)), 0.0)
        self.assertAlmostEqual(block_level(np.array([0.5, -0.5])), 0.5)


# ===================================================================
# 3. Audio buffer
# ===================================================================

class TestAudioBuffer(unittest.TestCase):

    def test_drain_returns_everything_and_empties(self):
        buf = AudioBuffer(16000, 1)
        buf.append(np.ones(100, dtype=np.float32))
        buf.append(np.ones(60, dtype=np.float32))
        self.assertEqual(buf.sample_count, 160)
        self.assertAlmostEqual(buf.duration, 0.01)

        window = buf.drain()
        self.assertEqual(len(window), 160)
        self.assertEqual(window.sample_rate, 16000)
        self.assertEqual(buf.sample_count, 0)

    def test_drain_on_empty_buffer(self):
        window = AudioBuffer().drain()
        self.assertEqual(len(window), 0)

    def test_clear(self):
        buf = AudioBuffer()
        buf.append(np.ones(10, dtype=np.float32))
        buf.clear()
        self.assertEqual(buf.sample_count, 0)


# ===================================================================
# 4. Quality monitor
# ===================================================================

class TestQuality(unittest.TestCase):

    def test_silence_floors_score(self):
        sample = analyze_samples(silent_block(256))
        self.assertEqual(sample.volume, 0.0)
        self.assertEqual(sample.clarity, 0.0)
        self.assertAlmostEqual(sample.score, 0.1)

    def test_loud_signal_scores_higher(self):
        sample = analyze_samples(speech_block(256, level=0.8))
        self.assertGreater(sample.volume, 0.0)
        self.assertGreater(sample.score, 0.1)
        self.assertLessEqual(sample.score, 1.0)

    def test_byte_frequency_data_shape_and_range(self):
        bins = byte_frequency_data(speech_block(1000), 256)
        self.assertEqual(bins.size, 128)
        self.assertTrue(np.all(bins >= 0))
        self.assertTrue(np.all(bins <= 255))

    def test_short_input_is_padded(self):
        bins = byte_frequency_data(np.array([0.5], dtype=np.float32), 256)
        self.assertEqual(bins.size, 128)

    def test_sampling_is_throttled_to_tick(self):
        monitor = QualityMonitor(tick_ms=500, window=5)
        self.assertIsNotNone(monitor.maybe_sample(speech_block(), now=10.0))
        self.assertIsNone(monitor.maybe_sample(speech_block(), now=10.2))
        self.assertIsNotNone(monitor.maybe_sample(speech_block(), now=10.6))
        self.assertEqual(len(monitor.history()), 2)

    def test_window_is_bounded(self):
        monitor = QualityMonitor(tick_ms=0, window=3)
        for i in range(6):
            monitor.maybe_sample(speech_block(), now=float(i))
        self.assertEqual(len(monitor.history()), 3)

    def test_paused_monitor_does_not_sample(self):
        monitor = QualityMonitor(tick_ms=0)
        monitor.pause()
        self.assertIsNone(monitor.maybe_sample(speech_block(), now=1.0))
        monitor.resume()
        self.assertIsNotNone(monitor.maybe_sample(speech_block(), now=2.0))

    def test_average_score_default(self):
        self.assertEqual(QualityMonitor().average_score(default=0.5), 0.5)


# ===================================================================
# 5. Source manager
# ===================================================================

class TestAudioSourceManager(unittest.TestCase):

    def test_acquire_all_partial_success(self):
        backend = FakeCaptureBackend(available=("primary",))
        manager = AudioSourceManager(backend)
        acquired = manager.acquire_all([SourceKind.PRIMARY, SourceKind.SECONDARY])

        self.assertEqual([s.kind for s in acquired], [SourceKind.PRIMARY])
        described = {d["kind"]: d for d in manager.describe()}
        self.assertTrue(described["primary"]["is_active"])
        self.assertFalse(described["secondary"]["is_active"])
        self.assertIn("No secondary device", described["secondary"]["error"])

    def test_zero_sources_is_fatal(self):
        manager = AudioSourceManager(FakeCaptureBackend(available=()))
        with self.assertRaises(AcquisitionError) as ctx:
            manager.acquire_all([SourceKind.PRIMARY, SourceKind.SECONDARY])
        self.assertEqual(set(ctx.exception.failures), {"primary", "secondary"})

    def test_permission_denied_is_typed(self):
        manager = AudioSourceManager(FakeCaptureBackend(denied=("primary",)))
        with self.assertRaises(PermissionDenied):
            manager.acquire(SourceKind.PRIMARY)

    def test_unavailable_is_typed(self):
        manager = AudioSourceManager(FakeCaptureBackend(available=()))
        with self.assertRaises(DeviceUnavailable):
            manager.acquire(SourceKind.SECONDARY)

    def test_release_inactive_source_is_noop(self):
        backend = FakeCaptureBackend()
        manager = AudioSourceManager(backend)
        manager.release(SourceKind.SECONDARY)
        self.assertEqual(backend.closed, [])

    def test_release_closes_handle_once(self):
        backend = FakeCaptureBackend()
        manager = AudioSourceManager(backend)
        source = manager.acquire(SourceKind.PRIMARY)
        manager.release(source)
        manager.release(source)
        self.assertEqual(backend.closed, ["handle-primary"])
        self.assertFalse(source.is_active)
        self.assertEqual(manager.active_sources(), [])

    def test_acquire_is_idempotent_while_active(self):
        backend = FakeCaptureBackend()
        manager = AudioSourceManager(backend)
        first = manager.acquire(SourceKind.PRIMARY)
        second = manager.acquire(SourceKind.PRIMARY)
        self.assertIs(first, second)
        self.assertEqual(backend.opened, [SourceKind.PRIMARY])

    def test_detect_available_sources(self):
        backend = FakeCaptureBackend(available=("primary",))
        manager = AudioSourceManager(backend)
        result = manager.detect_available_sources()
        self.assertTrue(result["primary"])
        self.assertFalse(result["secondary"])
        self.assertIn("primary only", result["recommended_setup"])
        self.assertEqual(manager.active_sources(), [])
        self.assertEqual(backend.closed, ["handle-primary"])

    def test_blocks_route_to_sink(self):
        backend = FakeCaptureBackend()
        manager = AudioSourceManager(backend)
        received = []
        manager.set_sink(lambda kind, block: received.append((kind, len(block))))
        manager.acquire(SourceKind.PRIMARY)
        backend.feed(SourceKind.PRIMARY, speech_block(100))
        self.assertEqual(received, [(SourceKind.PRIMARY, 100)])


# ===================================================================
# 6. Mixer
# ===================================================================

class TestAudioMixer(unittest.TestCase):

    def setUp(self):
        self.backend = FakeCaptureBackend()
        self.manager = AudioSourceManager(self.backend)
        self.buffer = AudioBuffer(16000, 1)
        self.clock = FakeClock()
        self.silence = SilenceTracker(threshold=0.01, min_silence_ms=1000)
        self.quality = QualityMonitor(tick_ms=500)
        self.samples = []
        self.mixer = AudioMixer(
            self.manager,
            self.buffer,
            self.silence,
            self.quality,
            on_quality=self.samples.append,
            clock=self.clock,
        )
        self.manager.set_sink(self.mixer.on_block)

    def test_primary_block_lands_in_buffer_with_gain(self):
        self.manager.acquire(SourceKind.PRIMARY)
        self.backend.feed(SourceKind.PRIMARY, np.full(100, 0.5))
        window = self.buffer.drain()
        np.testing.assert_allclose(window.samples, np.full(100, 0.4), atol=1e-6)
        self.assertEqual(len(self.samples), 1)

    def test_secondary_is_mixed_on_primary_clock(self):
        self.manager.acquire_all([SourceKind.PRIMARY, SourceKind.SECONDARY])
        self.backend.feed(SourceKind.SECONDARY, np.full(100, 0.5))
        self.assertEqual(self.buffer.sample_count, 0)

        self.backend.feed(SourceKind.PRIMARY, np.full(100, 0.5))
        window = self.buffer.drain()
        np.testing.assert_allclose(window.samples, np.full(100, 0.7), atol=1e-6)

    def test_secondary_alone_clocks_the_mix(self):
        self.manager.acquire(SourceKind.SECONDARY)
        self.backend.feed(SourceKind.SECONDARY, np.full(10, 0.5))
        self.assertEqual(self.buffer.sample_count, 10)

    def test_paused_mixer_drops_blocks(self):
        self.manager.acquire(SourceKind.PRIMARY)
        self.mixer.pause()
        self.backend.feed(SourceKind.PRIMARY, speech_block())
        self.assertEqual(self.buffer.sample_count, 0)
        self.mixer.resume()
        self.backend.feed(SourceKind.PRIMARY, speech_block())
        self.assertEqual(self.buffer.sample_count, 1600)

    def test_silent_blocks_start_silence(self):
        self.manager.acquire(SourceKind.PRIMARY)
        self.backend.feed(SourceKind.PRIMARY, silent_block())
        self.assertTrue(self.silence.is_silent)
        self.assertEqual(self.silence.silence_start, self.clock.now)
        self.backend.feed(SourceKind.PRIMARY, speech_block())
        self.assertFalse(self.silence.is_silent)


if __name__ == "__main__":
    unittest.main()
