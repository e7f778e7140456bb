import tempfile
import unittest
from pathlib import Path
from unittest import mock

import numpy as np
from scipy.io import wavfile

import audio_capture
from audio_capture import (
    CaptureWorker,
    ProcessingWorker,
    SampleSourceError,
    WavFileSource,
    to_mono_float,
)
from config import AudioConfig
from measurement_session import MeasurementSession
from ring_buffer import RingBuffer
from signal_fixtures import SAMPLE_RATE, escapement_signal, make_config


class FakeSource:
    def __init__(self, blocks, fail_after=None):
        self.blocks = list(blocks)
        self.fail_after = fail_after
        self.reads = 0

    @property
    def exhausted(self):
        return not self.blocks

    def read(self):
        self.reads += 1
        if self.fail_after is not None and self.reads > self.fail_after:
            raise SampleSourceError("device unplugged")
        if not self.blocks:
            return np.zeros(0, dtype=np.float32)
        return self.blocks.pop(0)


class TestConversion(unittest.TestCase):
    def test_int16_stereo_to_mono(self):
        data = np.array([[16384, -16384], [32767, 32767]], dtype=np.int16)
        out = to_mono_float(data)
        self.assertEqual(out.dtype, np.float32)
        np.testing.assert_allclose(out, [0.0, 32767 / 32768], atol=1e-6)

    def test_uint8_centred(self):
        np.testing.assert_allclose(to_mono_float(np.array([128, 255, 0], dtype=np.uint8)),
                                   [0.0, 127 / 128, -1.0])


class TestWavFileSource(unittest.TestCase):
    def test_reads_file_in_chunks(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "watch.wav"
            samples = (escapement_signal(1.0) * 32767).astype(np.int16)
            wavfile.write(path, SAMPLE_RATE, np.column_stack([samples, samples]))

            source = WavFileSource(path, block_size=1000)
            source.open()
            self.assertEqual(source.sample_rate, SAMPLE_RATE)
            self.assertAlmostEqual(source.duration, 1.0, places=3)
            chunks = []
            while not source.exhausted:
                chunks.append(source.read())
            source.close()

        self.assertEqual(len(chunks[0]), 1000)
        joined = np.concatenate(chunks)
        self.assertEqual(len(joined), len(samples))
        np.testing.assert_allclose(joined, samples / 32768.0, atol=1e-6)

    def test_missing_file_raises(self):
        source = WavFileSource("/nonexistent/watch.wav")
        with self.assertRaises(SampleSourceError):
            source.open()

    def test_read_before_open_raises(self):
        with self.assertRaises(SampleSourceError):
            WavFileSource("unused.wav").read()


class TestSoundDeviceSource(unittest.TestCase):
    def test_open_failure_is_wrapped(self):
        fake_sd = mock.MagicMock()
        fake_sd.InputStream.side_effect = RuntimeError("no such device")
        with mock.patch.dict("sys.modules", {"sounddevice": fake_sd}):
            source = audio_capture.SoundDeviceSource(AudioConfig(device_index=42))
            with self.assertRaises(SampleSourceError):
                source.open()

    def test_reads_mono_blocks(self):
        fake_sd = mock.MagicMock()
        stream = fake_sd.InputStream.return_value
        stream.read.return_value = (np.ones((4, 2), dtype=np.float32), True)
        with mock.patch.dict("sys.modules", {"sounddevice": fake_sd}):
            source = audio_capture.SoundDeviceSource(AudioConfig(channels=2, block_size=4))
            source.open()
            block = source.read()
            source.close()
        np.testing.assert_array_equal(block, np.ones(4, dtype=np.float32))
        self.assertEqual(source.overflows, 1)
        stream.stop.assert_called_once()

    def test_list_input_devices_filters_outputs(self):
        fake_sd = mock.MagicMock()
        fake_sd.query_devices.return_value = [
            {"name": "Speakers", "max_input_channels": 0, "default_samplerate": 48000.0},
            {"name": "Mic", "max_input_channels": 1, "default_samplerate": 44100.0},
        ]
        with mock.patch.dict("sys.modules", {"sounddevice": fake_sd}):
            devices = audio_capture.list_input_devices()
        self.assertEqual([d["name"] for d in devices], ["Mic"])
        self.assertEqual(devices[0]["index"], 1)


class TestWorkers(unittest.TestCase):
    def test_capture_worker_moves_blocks_until_exhausted(self):
        ring = RingBuffer(100)
        worker = CaptureWorker(FakeSource([np.ones(10), np.ones(5)]), ring)
        worker.run()
        self.assertEqual(worker.samples_captured, 15)
        self.assertEqual(ring.available(), 15)
        self.assertIsNone(worker.error)

    def test_capture_worker_reports_failure(self):
        errors = []
        ring = RingBuffer(100)
        worker = CaptureWorker(FakeSource([np.ones(10)] * 5, fail_after=2), ring, on_error=errors.append)
        worker.run()
        self.assertEqual(ring.available(), 20)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(worker.error, SampleSourceError)

    def test_threads_feed_session(self):
        session = MeasurementSession(make_config())
        signal = escapement_signal(2.0)
        blocks = [signal[i:i + 1024] for i in range(0, len(signal), 1024)]
        capture = CaptureWorker(FakeSource(blocks), session.ring)
        processing = ProcessingWorker(session, interval_ms=5)
        processing.start()
        capture.start()
        capture.join(timeout=5.0)
        deadline = 50
        while session.ring.available() and deadline:
            processing.join(timeout=0.1)
            deadline -= 1
        processing.stop()
        processing.join(timeout=2.0)
        self.assertFalse(processing.is_alive())
        self.assertEqual(session.ring.available(), 0)
        self.assertGreater(len(session.events), 0)


if __name__ == "__main__":
    unittest.main()
