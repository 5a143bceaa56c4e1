import pytest
import redis

from database import redis_client
from database.models import StudentAttempt
from services import attempts
from services.errors import (
    AttemptLimitReached, Expired, NotFound, NotPublished, OutsideSchedule,
    StateConflict, ValidationError, WrongPassword,
)


def _answers(exam, *choices):
    """Map the exam's questions, in order, to the given option ids (None = skip)."""
    return {str(q.id): c for q, c in zip(exam.questions, choices) if c is not None}


class BrokenRedis:
    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise redis.ConnectionError("redis is down")
        return _fail


# ─── Start / resume ────────────────────────────────────────────────────────────

def test_start_twice_resumes_the_open_attempt(db, make_exam, now, later):
    exam = make_exam()

    first = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    second = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=later(minutes=5))

    assert first["resumed"] is False
    assert second["resumed"] is True
    assert second["attempt_id"] == first["attempt_id"]
    assert second["end_time"] == first["end_time"]
    assert db.query(StudentAttempt).count() == 1


def test_deadline_is_fixed_at_creation(db, make_exam, now, later):
    exam = make_exam(duration_minutes=30)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    early = attempts.get_attempt(db, started["attempt_id"], now=later(minutes=1))
    late = attempts.get_attempt(db, started["attempt_id"], now=later(minutes=20))

    assert early["end_time"] == late["end_time"] == started["end_time"]
    assert early["remaining_seconds"] > late["remaining_seconds"]
    assert late["remaining_seconds"] == 10 * 60


def test_expired_open_attempt_is_not_resumed(db, make_exam, now, later):
    exam = make_exam(duration_minutes=30)
    first = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    second = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=later(minutes=31))

    assert second["resumed"] is False
    assert second["attempt_id"] != first["attempt_id"]


def test_different_roll_numbers_get_separate_attempts(db, make_exam, now):
    exam = make_exam()
    a = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    b = attempts.start_attempt(db, exam.id, "Bob", "R-2", now=now)
    assert a["attempt_id"] != b["attempt_id"]


def test_start_rejects_unknown_and_unpublished_exams(db, make_exam, now):
    with pytest.raises(NotFound):
        attempts.start_attempt(db, 9999, "Ada", "R-1", now=now)

    draft = make_exam(status="DRAFT")
    with pytest.raises(NotPublished):
        attempts.start_attempt(db, draft.id, "Ada", "R-1", now=now)


def test_start_requires_name_and_roll_number(db, make_exam, now):
    exam = make_exam()
    with pytest.raises(ValidationError):
        attempts.start_attempt(db, exam.id, "   ", "R-1", now=now)
    with pytest.raises(ValidationError):
        attempts.start_attempt(db, exam.id, "Ada", "", now=now)


def test_password_protected_exam(db, make_exam, now):
    exam = make_exam(require_password=True, password="s3cret")

    with pytest.raises(ValidationError) as missing:
        attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    assert not isinstance(missing.value, WrongPassword)

    with pytest.raises(WrongPassword):
        attempts.start_attempt(db, exam.id, "Ada", "R-1", password="guess", now=now)

    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", password="s3cret", now=now)
    assert started["attempt_id"]


def test_schedule_window(db, make_exam, now, later):
    upcoming = make_exam(scheduled_start=later(hours=1))
    with pytest.raises(OutsideSchedule):
        attempts.start_attempt(db, upcoming.id, "Ada", "R-1", now=now)

    closed = make_exam(scheduled_start=later(hours=-2), scheduled_end=later(hours=-1))
    with pytest.raises(OutsideSchedule):
        attempts.start_attempt(db, closed.id, "Ada", "R-1", now=now)

    lenient = make_exam(scheduled_end=later(hours=-1), allow_late_submission=True)
    assert attempts.start_attempt(db, lenient.id, "Ada", "R-1", now=now)["attempt_id"]


def test_max_attempts_counts_submitted_attempts(db, make_exam, now, later):
    exam = make_exam(max_attempts=1)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    attempts.submit_attempt(db, started["attempt_id"], {}, now=later(minutes=1))

    with pytest.raises(AttemptLimitReached):
        attempts.start_attempt(db, exam.id, "Ada", "R-1", now=later(minutes=2))


def test_max_attempts_still_allows_resume(db, make_exam, now, later):
    exam = make_exam(max_attempts=1)
    first = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    again = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=later(minutes=1))
    assert again["attempt_id"] == first["attempt_id"]


# ─── Presentation ──────────────────────────────────────────────────────────────

def _many_questions(n):
    return [
        {
            "text": f"Question {i}",
            "options": [{"id": f"o{j}", "text": f"Option {j}"} for j in range(4)],
            "correct_option": "o0",
        }
        for i in range(n)
    ]


def test_presentation_is_stable_for_an_attempt(db, make_exam, now):
    exam = make_exam(questions=_many_questions(8), shuffle_questions=True, shuffle_options=True)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    first = attempts.get_attempt(db, started["attempt_id"], now=now)["questions"]
    second = attempts.get_attempt(db, started["attempt_id"], now=now)["questions"]

    assert first == second
    assert sorted(q["id"] for q in first) == sorted(q.id for q in exam.questions)
    for q in first:
        assert "correct_option" not in q
        assert sorted(o["id"] for o in q["options"]) == ["o0", "o1", "o2", "o3"]


def test_presentation_keeps_authored_order_without_shuffle(db, make_exam):
    exam = make_exam(questions=_many_questions(5))
    presented = attempts.presentation_order(exam.questions, seed=7)
    assert [q["id"] for q in presented] == [q.id for q in exam.questions]
    assert [o["id"] for o in presented[0]["options"]] == ["o0", "o1", "o2", "o3"]


def test_presentation_depends_only_on_seed(db, make_exam):
    exam = make_exam(questions=_many_questions(10))
    one = attempts.presentation_order(exam.questions, 1234, True, True)
    two = attempts.presentation_order(list(exam.questions), 1234, True, True)
    assert one == two


# ─── Scoring & submit ──────────────────────────────────────────────────────────

def test_all_correct_scores_full_marks(db, make_exam, now, later):
    exam = make_exam()
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    result = attempts.submit_attempt(db, started["attempt_id"], _answers(exam, "b", "a"), now=later(minutes=10))

    assert result["score"] == 2
    assert result["total_marks"] == 2
    assert result["correct_answers"] == 2
    assert result["is_late"] is False


def test_negative_marking_uses_exam_penalty(db, make_exam, now, later):
    exam = make_exam(negative_marking=True, negative_marks=0.5)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    result = attempts.submit_attempt(db, started["attempt_id"], _answers(exam, "b", "c"), now=later(minutes=10))

    assert result["score"] == 0.5
    assert result["correct_answers"] == 1
    assert result["wrong_answers"] == 1


def test_question_penalty_overrides_exam_penalty():
    class Q:
        def __init__(self, id, correct, marks=1, negative_marks=None):
            self.id, self.correct_option, self.marks, self.negative_marks = id, correct, marks, negative_marks

    questions = [Q(1, "a"), Q(2, "a", negative_marks=2), Q(3, "a")]
    card = attempts.score_answers(questions, {"1": "b", "2": "b"}, negative_marking=True, negative_marks=0.25)

    assert card["score"] == -2.25
    assert card["wrong_answers"] == 2
    assert card["unanswered"] == 1


def test_unanswered_questions_are_not_penalised(db, make_exam, now, later):
    exam = make_exam(negative_marking=True, negative_marks=1)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    result = attempts.submit_attempt(db, started["attempt_id"], _answers(exam, "b", None), now=later(minutes=1))

    assert result["score"] == 1
    assert result["unanswered"] == 1


def test_second_submit_is_rejected_and_score_kept(db, make_exam, now, later):
    exam = make_exam()
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    attempts.submit_attempt(db, started["attempt_id"], _answers(exam, "b", "a"), now=later(minutes=1))

    with pytest.raises(StateConflict):
        attempts.submit_attempt(db, started["attempt_id"], _answers(exam, "a", "b"), now=later(minutes=2))

    stored = db.query(StudentAttempt).filter(StudentAttempt.id == started["attempt_id"]).one()
    assert stored.score == 2


def test_submit_from_a_stale_session_loses_to_the_first_submit(file_sessions, shared_exam, now, later):
    with file_sessions() as setup:
        attempt_id = attempts.start_attempt(setup, shared_exam, "Ada", "R-1", now=now)["attempt_id"]

    with file_sessions() as stale, file_sessions() as fresh:
        # Loaded while still open, so only the conditional UPDATE can catch the second submit
        stale_attempt = stale.get(StudentAttempt, attempt_id)
        assert stale_attempt.submitted is False
        q1, q2 = [str(q.id) for q in stale_attempt.exam.questions]

        first = attempts.submit_attempt(fresh, attempt_id, {q1: "b"}, now=later(minutes=1))
        with pytest.raises(StateConflict):
            attempts.submit_attempt(stale, attempt_id, {q2: "a"}, now=later(minutes=2))

    with file_sessions() as check:
        stored = check.get(StudentAttempt, attempt_id)
        assert stored.score == first["score"] == 1
        assert stored.answers == {q1: "b"}


def test_submit_after_deadline_is_rejected(db, make_exam, now, later):
    exam = make_exam(duration_minutes=30)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    with pytest.raises(Expired):
        attempts.submit_attempt(db, started["attempt_id"], _answers(exam, "b", "a"), now=later(minutes=31))

    stored = db.query(StudentAttempt).filter(StudentAttempt.id == started["attempt_id"]).one()
    assert stored.submitted is False
    assert stored.score is None


def test_late_submission_is_flagged_when_allowed(db, make_exam, now, later):
    exam = make_exam(duration_minutes=30, allow_late_submission=True)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    result = attempts.submit_attempt(db, started["attempt_id"], _answers(exam, "b", "a"), now=later(minutes=45))

    assert result["is_late"] is True
    assert result["score"] == 2


def test_submit_rejects_unknown_question_or_option(db, make_exam, now):
    exam = make_exam()
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    with pytest.raises(ValidationError):
        attempts.submit_attempt(db, started["attempt_id"], {"99999": "a"}, now=now)
    with pytest.raises(ValidationError):
        attempts.submit_attempt(db, started["attempt_id"], _answers(exam, "zzz"), now=now)


def test_submit_unknown_attempt(db):
    with pytest.raises(NotFound):
        attempts.submit_attempt(db, "no-such-attempt", {})


# ─── Auto-save ─────────────────────────────────────────────────────────────────

def test_autosaved_answers_are_scored_on_submit(db, make_exam, fake_redis, now, later):
    exam = make_exam()
    q1, q2 = exam.questions
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    attempt_id = started["attempt_id"]

    attempts.save_answer(db, attempt_id, q1.id, "b", now=later(minutes=1))
    attempts.save_answer(db, attempt_id, q2.id, "b", now=later(minutes=2))
    assert attempts.get_attempt(db, attempt_id, now=later(minutes=3))["answers"] == {str(q1.id): "b", str(q2.id): "b"}

    # Submitted answers win over saved ones
    result = attempts.submit_attempt(db, attempt_id, {str(q2.id): "a"}, now=later(minutes=4))

    assert result["score"] == 2
    assert fake_redis.exists(f"exam_attempt:{attempt_id}:answers") == 0


def test_autosave_ttl_outlives_the_deadline(db, make_exam, fake_redis, now):
    exam = make_exam(duration_minutes=30)
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)

    attempts.save_answer(db, started["attempt_id"], exam.questions[0].id, "a", now=now)

    ttl = fake_redis.ttl(f"exam_attempt:{started['attempt_id']}:answers")
    assert 30 * 60 < ttl <= 60 * 60


def test_saved_answer_for_a_removed_question_does_not_block_submit(db, make_exam, fake_redis, now, later):
    exam = make_exam()
    q1, q2 = exam.questions
    removed_id = q1.id
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    attempt_id = started["attempt_id"]
    attempts.save_answer(db, attempt_id, q1.id, "b", now=now)

    db.delete(q1)
    db.commit()
    db.expire_all()

    assert str(removed_id) not in attempts.get_attempt(db, attempt_id, now=later(minutes=1))["answers"]
    # Answers sent with the submit itself are still checked strictly
    with pytest.raises(ValidationError):
        attempts.submit_attempt(db, attempt_id, {str(removed_id): "b"}, now=later(minutes=2))

    result = attempts.submit_attempt(db, attempt_id, {str(q2.id): "a"}, now=later(minutes=2))

    assert result["score"] == 1
    assert result["total_questions"] == 1
    stored = db.get(StudentAttempt, attempt_id)
    assert stored.answers == {str(q2.id): "a"}


def test_save_answer_validations(db, make_exam, now, later):
    exam = make_exam()
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    attempt_id = started["attempt_id"]

    with pytest.raises(ValidationError):
        attempts.save_answer(db, attempt_id, exam.questions[0].id, "nope", now=now)
    with pytest.raises(ValidationError):
        attempts.save_answer(db, attempt_id, 424242, "a", now=now)
    with pytest.raises(Expired):
        attempts.save_answer(db, attempt_id, exam.questions[0].id, "a", now=later(minutes=31))

    attempts.submit_attempt(db, attempt_id, {}, now=later(minutes=1))
    with pytest.raises(StateConflict):
        attempts.save_answer(db, attempt_id, exam.questions[0].id, "a", now=later(minutes=2))


def test_submit_works_while_redis_is_down(db, make_exam, now, later):
    exam = make_exam()
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    redis_client.set_redis(BrokenRedis())

    result = attempts.submit_attempt(db, started["attempt_id"], _answers(exam, "b", "a"), now=later(minutes=1))

    assert result["score"] == 2


# ─── Result page ───────────────────────────────────────────────────────────────

def test_result_requires_submission(db, make_exam, now):
    exam = make_exam()
    started = attempts.start_attempt(db, exam.id, "Ada", "R-1", now=now)
    with pytest.raises(StateConflict):
        attempts.get_attempt_result(db, started["attempt_id"])


def test_result_breakdown_follows_exam_setting(db, make_exam, now, later):
    shown = make_exam(show_results_immediately=True, pass_percentage=50)
    hidden = make_exam(show_results_immediately=False)

    a = attempts.start_attempt(db, shown.id, "Ada", "R-1", now=now)
    attempts.submit_attempt(db, a["attempt_id"], _answers(shown, "b", "b"), now=later(minutes=1))
    b = attempts.start_attempt(db, hidden.id, "Ada", "R-1", now=now)
    attempts.submit_attempt(db, b["attempt_id"], _answers(hidden, "b", "b"), now=later(minutes=1))

    visible = attempts.get_attempt_result(db, a["attempt_id"])
    assert visible["percentage"] == 50
    assert visible["passed"] is True
    assert [row["is_correct"] for row in visible["breakdown"]] == [True, False]

    assert "breakdown" not in attempts.get_attempt_result(db, b["attempt_id"])
