import csv
import json
import time
from pathlib import Path

from logging_utils import log_event


class SessionReporter:
    """Persists per-session posture summaries to JSON and CSV reports."""

    SESSION_FIELDS = [
        "session_started_at",
        "session_ended_at",
        "audio_seconds",
        "sample_rate",
        "expected_bph",
        "lift_angle",
        "events_detected",
        "discontinuities",
        "overrun_samples",
        "refractory_rejections",
    ]
    POSTURE_FIELDS = ["index", "label", "rate", "amplitude", "beat_error_ms", "updates"]

    def __init__(self, report_dir: Path, max_sessions: int = 200):
        self.report_dir = Path(report_dir)
        self.report_dir.mkdir(parents=True, exist_ok=True)
        self.json_path = self.report_dir / "posture_report.json"
        self.csv_path = self.report_dir / "posture_report.csv"
        self.max_sessions = max(1, int(max_sessions))

    def _load_existing_sessions(self) -> list[dict]:
        if not self.json_path.exists():
            return []
        try:
            with open(self.json_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            sessions = payload.get("sessions", [])
            return sessions if isinstance(sessions, list) else []
        except (OSError, ValueError, AttributeError) as e:
            log_event("WARN", "Report", "Existing report unreadable, starting fresh", error=e)
            return []

    def _to_builtin(self, value):
        if isinstance(value, dict):
            return {str(k): self._to_builtin(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._to_builtin(v) for v in value]

        # numpy scalars and arrays
        tolist = getattr(value, "tolist", None)
        if callable(tolist):
            return self._to_builtin(tolist())
        return value

    def save_session(self, session_summary: dict) -> None:
        sessions = self._load_existing_sessions()
        sessions.append(self._to_builtin(session_summary))
        if len(sessions) > self.max_sessions:
            sessions = sessions[-self.max_sessions :]

        payload = {
            "generated_at": time.time(),
            "session_count": len(sessions),
            "latest": sessions[-1],
            "sessions": sessions,
        }

        with open(self.json_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)

        # One row per measured posture of every kept session
        fieldnames = self.SESSION_FIELDS + [f"posture_{key}" for key in self.POSTURE_FIELDS]
        with open(self.csv_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writeheader()
            for session in sessions:
                base = {key: session.get(key, "") for key in self.SESSION_FIELDS}
                for posture in session.get("postures", []):
                    if not posture.get("updates"):
                        continue
                    row = dict(base)
                    row.update({f"posture_{key}": posture.get(key, "") for key in self.POSTURE_FIELDS})
                    writer.writerow(row)

        log_event("INFO", "Report", "Session report saved", path=self.json_path, sessions=len(sessions))
