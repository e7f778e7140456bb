import unittest

import numpy as np

from config import DetectionConfig
from peak_picker import AdaptivePeakPicker
from transient_detector import TransientDetector, envelope_fwhm

SR = 22050


def bumpy_envelope(n, centres, heights=None, sigma=20.0, noise=0.01, seed=7):
    rng = np.random.default_rng(seed)
    env = rng.random(n) * noise
    idx = np.arange(n)
    heights = heights or [1.0] * len(centres)
    for c, h in zip(centres, heights):
        env += h * np.exp(-((idx - c) ** 2) / (2.0 * sigma ** 2))
    return env


def pick_incrementally(picker, envelope, step=500):
    accepted = []
    for n in range(step, len(envelope) + 1, step):
        accepted.extend(picker.pick(envelope[:n], 0))
    return accepted


class TestTransientDetector(unittest.TestCase):
    def test_envelope_is_non_negative_and_aligned(self):
        det = TransientDetector(DetectionConfig(), SR, history_seconds=1.0)
        x = np.zeros(4000)
        t = np.arange(200) / SR
        x[2000:2200] = 0.5 * np.sin(2 * np.pi * 3000 * t) * np.hanning(200)
        det.append(x)
        env = det.envelope()
        self.assertEqual(len(env), len(x))
        self.assertTrue(np.all(env >= 0.0))
        self.assertLess(abs(int(np.argmax(env)) - 2100), 30)

    def test_history_is_bounded_and_index_tracked(self):
        det = TransientDetector(DetectionConfig(), SR, history_seconds=0.1)
        for _ in range(10):
            det.append(np.ones(1000))
        self.assertEqual(len(det.signal), det.max_history)
        self.assertEqual(det.end_index, 10000)
        self.assertEqual(det.start_index, 10000 - det.max_history)

    def test_reset_sets_start_index(self):
        det = TransientDetector(DetectionConfig(), SR, history_seconds=0.1)
        det.append(np.ones(100))
        det.reset(5000)
        self.assertEqual(det.start_index, 5000)
        self.assertEqual(len(det.envelope()), 0)

    def test_fwhm_of_triangle(self):
        env = np.maximum(0.0, 10.0 - np.abs(np.arange(101) - 50.0))
        self.assertAlmostEqual(envelope_fwhm(env, 50, 0.0, 20), 10.0, places=6)

    def test_fwhm_zero_when_peak_below_baseline(self):
        env = np.ones(20)
        self.assertEqual(envelope_fwhm(env, 10, 2.0, 5), 0.0)


class TestAdaptivePeakPicker(unittest.TestCase):
    def test_each_peak_reported_once(self):
        centres = [12000 + 3675 * k for k in range(8)]
        env = bumpy_envelope(centres[-1] + 5000, centres)
        picker = AdaptivePeakPicker(DetectionConfig(), SR)
        accepted = pick_incrementally(picker, env)
        self.assertEqual(len(accepted), len(centres))
        for peak, centre in zip(accepted, centres):
            self.assertLessEqual(abs(peak.index - centre), 4)
            self.assertLessEqual(abs(peak.position - peak.index), 0.5)
            self.assertGreater(peak.width, 0.0)
        self.assertGreater(picker.snr_db(), 20.0)

    def test_refractory_separation_holds(self):
        cfg = DetectionConfig()
        centres, heights = [], []
        for k in range(10):
            base = 12000 + 2000 * k
            centres += [base, base + 110]       # 5 ms apart
            heights += [1.0, 0.8 if k % 2 else 1.2]
        env = bumpy_envelope(centres[-1] + 5000, centres, heights, sigma=10.0)
        picker = AdaptivePeakPicker(cfg, SR)
        accepted = pick_incrementally(picker, env)
        self.assertEqual(len(accepted), 10)
        gaps = np.diff([p.position for p in accepted]) / SR
        self.assertTrue(np.all(gaps >= cfg.min_tick_separation))

    def test_nothing_before_min_history(self):
        env = bumpy_envelope(5000, [2000])
        picker = AdaptivePeakPicker(DetectionConfig(), SR)
        self.assertEqual(picker.pick(env, 0), [])

    def test_digital_silence_yields_nothing(self):
        picker = AdaptivePeakPicker(DetectionConfig(), SR)
        self.assertEqual(picker.pick(np.zeros(30000), 0), [])
        self.assertEqual(picker.snr_db(), 0.0)

    def test_absolute_indices_follow_start_index(self):
        centres = [12000, 15675]
        env = bumpy_envelope(22000, centres)
        picker = AdaptivePeakPicker(DetectionConfig(), SR)
        accepted = picker.pick(env, 100000)
        self.assertEqual(len(accepted), 2)
        self.assertLessEqual(abs(accepted[0].index - 112000), 4)

    def test_threshold_tracks_noise_floor(self):
        quiet = AdaptivePeakPicker(DetectionConfig(), SR)
        loud = AdaptivePeakPicker(DetectionConfig(), SR)
        quiet.pick(bumpy_envelope(30000, [], noise=0.01), 0)
        loud.pick(bumpy_envelope(30000, [], noise=0.1), 0)
        self.assertGreater(loud.threshold, 5 * quiet.threshold)


if __name__ == "__main__":
    unittest.main()
