import csv
import json
import tempfile
import unittest
from pathlib import Path

import numpy as np

from session_reporter import SessionReporter


def summary(rate=1.5, updates=3):
    return {
        "session_started_at": 100.0,
        "session_ended_at": 160.0,
        "audio_seconds": np.float64(60.0),
        "sample_rate": 44100,
        "expected_bph": 21600.0,
        "lift_angle": 52.0,
        "events_detected": np.int64(360),
        "discontinuities": 0,
        "overrun_samples": 0,
        "postures": [
            {"index": 0, "label": "Dial Up", "rate": rate, "amplitude": 275.0,
             "beat_error_ms": 0.4, "updates": updates},
            {"index": 1, "label": "Dial Down", "rate": 0.0, "amplitude": 0.0,
             "beat_error_ms": 0.0, "updates": 0},
        ],
    }


class TestSessionReporter(unittest.TestCase):
    def test_writes_json_and_csv(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = SessionReporter(Path(tmpdir) / "reports")
            reporter.save_session(summary())

            with open(reporter.json_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            self.assertEqual(payload["session_count"], 1)
            self.assertEqual(payload["latest"]["events_detected"], 360)

            with open(reporter.csv_path, "r", newline="", encoding="utf-8") as f:
                rows = list(csv.DictReader(f))
            # Only measured postures produce rows
            self.assertEqual(len(rows), 1)
            self.assertEqual(rows[0]["posture_label"], "Dial Up")
            self.assertEqual(float(rows[0]["posture_rate"]), 1.5)

    def test_keeps_bounded_history(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = SessionReporter(Path(tmpdir), max_sessions=2)
            for rate in (1.0, 2.0, 3.0):
                reporter.save_session(summary(rate=rate))
            with open(reporter.json_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            self.assertEqual(payload["session_count"], 2)
            self.assertEqual([s["postures"][0]["rate"] for s in payload["sessions"]], [2.0, 3.0])

    def test_corrupt_report_is_replaced(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = SessionReporter(Path(tmpdir))
            reporter.json_path.write_text("{not json", encoding="utf-8")
            reporter.save_session(summary())
            with open(reporter.json_path, "r", encoding="utf-8") as f:
                self.assertEqual(json.load(f)["session_count"], 1)


if __name__ == "__main__":
    unittest.main()
