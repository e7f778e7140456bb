import unittest

import numpy as np

from config import FilterConfig
from preprocessor import Preprocessor

SR = 22050


def tone(freq, seconds, amplitude=0.5):
    t = np.arange(int(seconds * SR)) / SR
    return amplitude * np.sin(2 * np.pi * freq * t)


class TestPreprocessorFilters(unittest.TestCase):
    def test_rejects_hum_and_passes_tick_band(self):
        pre = Preprocessor(FilterConfig(), SR)
        hum = pre.filter(tone(50.0, 1.0))
        pre.reset()
        band = pre.filter(tone(3000.0, 1.0))
        settled = slice(SR // 2, None)
        self.assertLess(np.std(hum[settled]), 0.01)
        self.assertGreater(np.std(band[settled]), 0.3)

    def test_filter_state_carries_across_blocks(self):
        x = np.random.default_rng(3).normal(0.0, 0.1, 5000)
        whole = Preprocessor(FilterConfig(), SR).filter(x)
        chunked_pre = Preprocessor(FilterConfig(), SR)
        chunked = np.concatenate([chunked_pre.filter(x[i:i + 777]) for i in range(0, len(x), 777)])
        np.testing.assert_allclose(whole, chunked, atol=1e-10)

    def test_lowpass_clamped_below_nyquist(self):
        cfg = FilterConfig(lowpass_cutoff=20000.0)
        pre = Preprocessor(cfg, 8000)
        out = pre.filter(np.random.default_rng(0).normal(0.0, 0.1, 4000))
        self.assertTrue(np.all(np.isfinite(out)))

    def test_non_finite_input_is_neutralised(self):
        pre = Preprocessor(FilterConfig(), SR)
        x = np.ones(256)
        x[10] = np.nan
        x[20] = np.inf
        self.assertTrue(np.all(np.isfinite(pre.process(x))))


class TestAutomaticGain(unittest.TestCase):
    def test_steady_tone_converges_to_target_level(self):
        cfg = FilterConfig(agc_target_level=0.1, agc_smoothing=0.2)
        pre = Preprocessor(cfg, SR)
        x = tone(2000.0, 3.0, amplitude=0.002)
        out = None
        for start in range(0, len(x), 1024):
            out = pre.process(x[start:start + 1024])
        rms = float(np.sqrt(np.mean(out ** 2)))
        self.assertAlmostEqual(rms, 0.1, delta=0.02)

    def test_gain_is_clamped(self):
        cfg = FilterConfig(agc_max_gain=10.0)
        pre = Preprocessor(cfg, SR)
        pre.process(tone(2000.0, 0.1, amplitude=1e-4))
        self.assertEqual(pre.gain, 10.0)

    def test_silence_holds_gain(self):
        pre = Preprocessor(FilterConfig(), SR)
        pre.process(tone(2000.0, 0.1, amplitude=0.05))
        pre.process(np.zeros(SR))  # let the filter ringing die out
        gain = pre.gain
        out = pre.process(np.zeros(2048))
        self.assertEqual(pre.gain, gain)
        self.assertTrue(np.all(np.isfinite(out)))

    def test_output_length_matches_input(self):
        pre = Preprocessor(FilterConfig(), SR)
        for n in (0, 1, 17, 1024):
            self.assertEqual(len(pre.process(np.ones(n) * 0.01)), n)


if __name__ == "__main__":
    unittest.main()
