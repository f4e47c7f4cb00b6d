import sys
import os
import json

# Add backend to path so we can import modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from event_logging.event_tracker import EventTracker


def test_events_are_appended_as_json_lines(tmp_path):
    log_file = tmp_path / "events.jsonl"
    tracker = EventTracker(str(log_file))

    tracker.track("u1", "categorization_completed", {"repoCount": 3})
    tracker.track("u1", "cv_generated", {"cvCount": 2})
    tracker.flush()

    events = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert [e["event_type"] for e in events] == ["categorization_completed", "cv_generated"]
    assert events[0]["metadata"] == {"repoCount": 3}
    assert events[0]["user_id"] == "u1"
    assert "timestamp" in events[0]


def test_write_failure_does_not_raise(tmp_path):
    tracker = EventTracker(str(tmp_path / "missing-dir" / "events.jsonl"))
    tracker.track("u1", "session_deleted")
    tracker.flush()


def test_disabled_tracker_writes_nothing(tmp_path):
    tracker = EventTracker(None)
    tracker.track("u1", "cv_generated")
    tracker.flush()
    assert list(tmp_path.iterdir()) == []
