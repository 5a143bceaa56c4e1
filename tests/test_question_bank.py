import pytest

from database.models import BankQuestion, Question
from services import billing, folders, question_bank
from services.errors import NotFound, StateConflict, Unauthorized, ValidationError


def _bank_data(text="What is H2O?", **overrides):
    data = {
        "text": text,
        "options": [{"id": "a", "text": "Water"}, {"id": "b", "text": "Salt"}],
        "correct_option": "a",
        "difficulty": "EASY",
        "tags": ["chemistry"],
    }
    data.update(overrides)
    return data


def test_add_and_filter(db, teacher):
    folder = folders.create_folder(db, teacher, "Science")
    question_bank.add_question(db, teacher, _bank_data(folder_id=folder["id"]))
    question_bank.add_question(db, teacher, _bank_data("Speed of light?", difficulty="HARD", tags=["physics"]))

    assert len(question_bank.list_questions(db, teacher)) == 2
    assert [q["text"] for q in question_bank.list_questions(db, teacher, folder_id=folder["id"])] == ["What is H2O?"]
    assert [q["text"] for q in question_bank.list_questions(db, teacher, root_only=True)] == ["Speed of light?"]
    assert [q["text"] for q in question_bank.list_questions(db, teacher, tag="physics")] == ["Speed of light?"]
    assert [q["text"] for q in question_bank.list_questions(db, teacher, difficulty="easy")] == ["What is H2O?"]
    assert [q["text"] for q in question_bank.list_questions(db, teacher, search="light")] == ["Speed of light?"]


def test_free_plan_bank_limit(db, teacher, now):
    for i in range(billing.FREE_BANK_LIMIT):
        question_bank.add_question(db, teacher, _bank_data(f"Q{i}"))

    with pytest.raises(StateConflict):
        question_bank.add_question(db, teacher, _bank_data("one too many"))

    billing.start_subscription(db, teacher, "MONTHLY", now=now)
    question_bank.add_question(db, teacher, _bank_data("pro question"))
    assert db.query(BankQuestion).count() == billing.FREE_BANK_LIMIT + 1


def test_update_rechecks_the_answer(db, teacher, make_teacher):
    q = question_bank.add_question(db, teacher, _bank_data())

    with pytest.raises(ValidationError):
        question_bank.update_question(db, teacher, q["id"], {"correct_option": "z"})
    with pytest.raises(Unauthorized):
        question_bank.update_question(db, make_teacher(), q["id"], {"text": "mine now"})

    updated = question_bank.update_question(db, teacher, q["id"], {"text": "What is water?", "subject": None})
    assert updated["text"] == "What is water?"


def test_tags_merge_without_duplicates(db, teacher):
    q = question_bank.add_question(db, teacher, _bank_data(tags=["chemistry", "basics"]))

    question_bank.add_tags(db, teacher, [q["id"]], ["basics", "quiz"])

    assert question_bank.list_questions(db, teacher)[0]["tags"] == ["chemistry", "basics", "quiz"]


def test_batch_operations_are_all_or_nothing(db, teacher, make_teacher):
    mine = question_bank.add_question(db, teacher, _bank_data())
    other = make_teacher()
    theirs = question_bank.add_question(db, other, _bank_data())

    with pytest.raises(NotFound):
        question_bank.delete_questions(db, teacher, [mine["id"], theirs["id"]])
    assert db.query(BankQuestion).count() == 2

    assert question_bank.delete_questions(db, teacher, [mine["id"]]) == 1


def test_duplicate_keeps_folder(db, teacher):
    folder = folders.create_folder(db, teacher, "Science")
    q = question_bank.add_question(db, teacher, _bank_data(folder_id=folder["id"]))

    copies = question_bank.duplicate_questions(db, teacher, [q["id"]])

    assert copies[0]["text"] == "What is H2O? (Copy)"
    assert copies[0]["folder_id"] == folder["id"]
    assert copies[0]["id"] != q["id"]


def test_import_copies_into_draft_exam_only(db, teacher, make_exam, now):
    q = question_bank.add_question(db, teacher, _bank_data())
    draft = make_exam(status="DRAFT")

    assert question_bank.import_into_exam(db, teacher, draft.id, [q["id"]], now=now) == 1

    db.expire_all()
    imported = db.query(Question).filter(Question.exam_id == draft.id).order_by(Question.position).all()
    assert len(imported) == 3
    assert imported[-1].text == "What is H2O?"
    assert imported[-1].position == 2
    stored = db.get(BankQuestion, q["id"])
    assert stored.usage_count == 1
    assert stored.last_used is not None

    # Editing the bank copy leaves the exam copy alone
    question_bank.update_question(db, teacher, q["id"], {"text": "Changed"})
    db.expire_all()
    assert db.get(Question, imported[-1].id).text == "What is H2O?"

    published = make_exam()
    with pytest.raises(StateConflict):
        question_bank.import_into_exam(db, teacher, published.id, [q["id"]])


def test_save_from_exam_is_deduplicated(db, teacher, make_exam):
    exam = make_exam()
    question = exam.questions[0]

    first = question_bank.save_from_exam(db, teacher, exam.id, question.id)
    second = question_bank.save_from_exam(db, teacher, exam.id, question.id)

    assert first["saved"] is True
    assert second == {"saved": False, "already_exists": True, "question_id": first["question_id"]}
    assert question_bank.check_in_bank(db, teacher, exam.id, question.id)["in_bank"] is True
    assert question_bank.check_in_bank(db, teacher, exam.id, exam.questions[1].id) == {"in_bank": False}


def test_save_from_someone_elses_exam(db, make_exam, make_teacher):
    exam = make_exam()
    with pytest.raises(Unauthorized):
        question_bank.save_from_exam(db, make_teacher(), exam.id, exam.questions[0].id)
