from concurrent.futures import ThreadPoolExecutor

import pytest

from database.models import IntegrityEvent, StudentAttempt
from services import attempts, integrity
from services.errors import Expired, NotFound, StateConflict, Unauthorized, ValidationError


# ─── Policy ────────────────────────────────────────────────────────────────────

def test_risk_levels_for_an_allowance_of_four():
    levels = [integrity.risk_level(v, 4) for v in (0, 1, 3, 5)]
    assert levels == ["LOW", "MEDIUM", "HIGH", "CRITICAL"]


@pytest.mark.parametrize("max_violations", [0, 1, 3, 4, 10])
def test_risk_level_never_decreases(max_violations):
    order = {level: i for i, level in enumerate(integrity.RISK_LEVELS)}
    ranks = [order[integrity.risk_level(v, max_violations)] for v in range(0, 25)]
    assert ranks == sorted(ranks)


def test_trust_score_floors_at_zero():
    assert integrity.trust_score(0) == 100
    assert integrity.trust_score(2) == 60
    assert integrity.trust_score(9) == 0


# ─── Tracking ──────────────────────────────────────────────────────────────────

def test_events_are_counted_and_force_submit_is_advisory(db, make_exam, now, later):
    exam = make_exam(max_violations=2)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    attempt_id = started["attempt_id"]

    first = integrity.track_event(db, attempt_id, "TAB_SWITCH", now=later(minutes=1))
    second = integrity.track_event(db, attempt_id, "COPY_ATTEMPT", {"length": 12}, now=later(minutes=2))

    assert first["violation_count"] == 1
    assert first["force_submit"] is False
    assert second["violation_count"] == 2
    assert second["force_submit"] is True
    # The tracker never submits on its own
    assert attempts.get_attempt(db, attempt_id, now=later(minutes=3))["submitted"] is False


def test_force_submit_off_when_anti_cheat_disabled(db, make_exam, now):
    exam = make_exam(max_violations=1, anti_cheat_enabled=False)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    tracked = integrity.track_event(db, started["attempt_id"], "WINDOW_BLUR", now=now)

    assert tracked["violation_count"] == 1
    assert tracked["force_submit"] is False


def test_unknown_event_type_is_rejected(db, make_exam, now):
    exam = make_exam()
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    with pytest.raises(ValidationError):
        integrity.track_event(db, started["attempt_id"], "SNEEZE", now=now)


def test_events_rejected_once_attempt_is_closed(db, make_exam, now, later):
    exam = make_exam(duration_minutes=30)
    submitted = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    attempts.submit_attempt(db, submitted["attempt_id"], {}, now=later(minutes=1))
    with pytest.raises(StateConflict):
        integrity.track_event(db, submitted["attempt_id"], "TAB_SWITCH", now=later(minutes=2))

    running = attempts.start_attempt(db, exam.id, "Bob", "R-2", now=now)
    grace = integrity.INTEGRITY_GRACE_SECONDS
    # Within the grace period after the deadline the event is still accepted
    integrity.track_event(db, running["attempt_id"], "TAB_SWITCH", now=later(minutes=30, seconds=grace - 1))
    with pytest.raises(Expired):
        integrity.track_event(db, running["attempt_id"], "TAB_SWITCH", now=later(minutes=30, seconds=grace + 1))

    with pytest.raises(NotFound):
        integrity.track_event(db, "missing", "TAB_SWITCH", now=now)


def test_concurrent_events_are_all_counted(file_sessions, shared_exam, now):
    with file_sessions() as setup:
        attempt_id = attempts.start_attempt(setup, shared_exam, "Ada", "R-1", now=now)["attempt_id"]

    def _track(_):
        with file_sessions() as session:
            return integrity.track_event(session, attempt_id, "TAB_SWITCH")

    with ThreadPoolExecutor(max_workers=10) as pool:
        list(pool.map(_track, range(10)))

    with file_sessions() as check:
        attempt = check.query(StudentAttempt).filter(StudentAttempt.id == attempt_id).one()
        events = check.query(IntegrityEvent).filter(IntegrityEvent.attempt_id == attempt_id).count()
        assert attempt.violation_count == 10
        assert events == 10


def test_event_from_a_stale_session_after_submit_is_rejected(file_sessions, shared_exam, now, later):
    with file_sessions() as setup:
        attempt_id = attempts.start_attempt(setup, shared_exam, "Ada", "R-1", now=now)["attempt_id"]

    with file_sessions() as stale, file_sessions() as fresh:
        # Loaded while still open; the in-memory row is not refreshed by later queries
        stale_attempt = stale.get(StudentAttempt, attempt_id)
        assert stale_attempt.submitted is False

        attempts.submit_attempt(fresh, attempt_id, {}, now=later(minutes=1))

        with pytest.raises(StateConflict):
            integrity.track_event(stale, attempt_id, "TAB_SWITCH", now=later(minutes=2))

    with file_sessions() as check:
        attempt = check.get(StudentAttempt, attempt_id)
        assert attempt.violation_count == 0
        assert check.query(IntegrityEvent).filter(IntegrityEvent.attempt_id == attempt_id).count() == 0


# ─── Reports ───────────────────────────────────────────────────────────────────

def test_report_summarises_the_timeline(db, make_exam, teacher, now, later):
    exam = make_exam(max_violations=3)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    attempt_id = started["attempt_id"]

    integrity.track_event(db, attempt_id, "TAB_SWITCH", {"duration": 50}, now=later(minutes=3))
    integrity.track_event(db, attempt_id, "WINDOW_BLUR", {"duration": 20}, now=later(minutes=1))
    integrity.track_event(db, attempt_id, "PASTE_ATTEMPT", now=later(minutes=2))

    report = integrity.generate_integrity_report(db, teacher, attempt_id)

    assert report["total_events"] == 3
    assert report["violation_count"] == 3
    assert report["risk_level"] == "HIGH"
    assert report["trust_score"] == 40
    assert [e["event_type"] for e in report["timeline"]] == ["WINDOW_BLUR", "PASTE_ATTEMPT", "TAB_SWITCH"]
    assert report["by_type"] == {"TAB_SWITCH": 1, "WINDOW_BLUR": 1, "PASTE_ATTEMPT": 1}
    assert report["summary"] == {
        "focus_lost_count": 2,
        "fullscreen_exit_count": 0,
        "suspicious_actions": 1,
        "total_away_seconds": 70.0,
    }
    assert "Consider manual review of this submission" in report["recommendations"]


def test_clean_attempt_report(db, make_exam, teacher, now):
    exam = make_exam()
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    report = integrity.generate_integrity_report(db, teacher, started["attempt_id"])

    assert report["risk_level"] == "LOW"
    assert report["timeline"] == []
    assert report["recommendations"] == ["No major concerns detected"]


def test_reports_fail_closed_for_other_teachers(db, make_exam, make_teacher, now):
    exam = make_exam()
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    stranger = make_teacher()

    with pytest.raises(Unauthorized):
        integrity.generate_integrity_report(db, stranger, started["attempt_id"])
    with pytest.raises(Unauthorized):
        integrity.calculate_exam_integrity(db, stranger, exam.id)
    with pytest.raises(Unauthorized):
        integrity.generate_integrity_report(db, None, started["attempt_id"])
    with pytest.raises(NotFound):
        integrity.generate_integrity_report(db, stranger, "missing")


def test_exam_integrity_lists_submitted_attempts_only(db, make_exam, teacher, now, later):
    exam = make_exam(max_violations=4)
    done = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    attempts.start_attempt(db, exam.id, "Bob", "R-2", now=now)
    for minute in range(1, 6):
        integrity.track_event(db, done["attempt_id"], "FULLSCREEN_EXIT", now=later(minutes=minute))
    attempts.submit_attempt(db, done["attempt_id"], {}, now=later(minutes=10))

    rows = integrity.calculate_exam_integrity(db, teacher, exam.id)

    assert len(rows) == 1
    assert rows[0]["attempt_id"] == done["attempt_id"]
    assert rows[0]["violation_count"] == 5
    assert rows[0]["risk_level"] == "CRITICAL"
    assert rows[0]["trust_score"] == 0
