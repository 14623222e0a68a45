from datetime import timedelta

import pytest

from errors import NotFound, ValidationError
from repository import Repository, natural_key_id
from schemas import COURSES, GRADES, STUDENTS


def test_create_stamps_and_validates(repo):
    student = repo.create(STUDENTS, {"full_name": "Ada Obi", "date_of_birth": "2010-04-02"})

    assert student.id
    assert student.created_at == student.updated_at
    assert student.created_at.tzinfo is not None
    assert repo.get(STUDENTS, student.id) == student


def test_update_never_moves_updated_at_backwards(repo, store):
    student = repo.create(STUDENTS, {"full_name": "Ada Obi"})
    future = student.updated_at + timedelta(hours=1)
    store.write(STUDENTS, student.id, {**student.model_dump(exclude={"id"}), "updated_at": future})

    updated = repo.update(STUDENTS, student.id, {"full_name": "Ada N. Obi"})

    assert updated.updated_at >= future
    assert updated.created_at == student.created_at


@pytest.mark.parametrize("field", ["id", "created_at", "updated_at"])
def test_server_fields_cannot_be_written(repo, field):
    with pytest.raises(ValidationError):
        repo.create(STUDENTS, {"full_name": "Ada Obi", field: "x"})


def test_unknown_fields_are_rejected(repo):
    with pytest.raises(ValidationError) as exc:
        repo.create(STUDENTS, {"full_name": "Ada Obi", "nickname": "Ada"})
    assert exc.value.errors[0]["loc"] == ["nickname"]


@pytest.mark.parametrize("data", [
    {"name": "Math", "code": "math101"},
    {"name": "M", "code": "MATH101"},
])
def test_course_field_rules(repo, data):
    with pytest.raises(ValidationError):
        repo.create(COURSES, data)


def test_bad_birth_date_is_rejected(repo):
    with pytest.raises(ValidationError):
        repo.create(STUDENTS, {"full_name": "Ada Obi", "date_of_birth": "02/04/2010"})


def test_get_and_delete_missing_document(repo):
    with pytest.raises(NotFound):
        repo.get(STUDENTS, "missing")
    with pytest.raises(NotFound):
        repo.delete(STUDENTS, "missing")
    assert repo.delete_if_present(STUDENTS, "missing") is False


def test_unknown_collection(repo):
    with pytest.raises(ValidationError):
        repo.find("widgets", "x")


def test_create_if_absent_returns_existing(repo):
    first, created = repo.create_if_absent(STUDENTS, "s-fixed", {"full_name": "Ada Obi"})
    second, created_again = repo.create_if_absent(STUDENTS, "s-fixed", {"full_name": "Someone Else"})

    assert created and not created_again
    assert second.full_name == "Ada Obi"
    assert second.id == first.id


def test_inconsistent_grade_is_rejected_on_read(store):
    store.write(GRADES, "g1", {
        "student_id": "s1", "student_name": "Ada Obi",
        "course_id": "c1", "course_name": "Math (MATH101)",
        "ca1": 10, "ca2": 10, "exam": 10,
        "total_marks": 30, "status": "Pass", "pass_mark": 50, "term": "T1",
    })
    with pytest.raises(ValidationError):
        Repository(store).get(GRADES, "g1")


def test_inconsistent_grade_is_rejected_on_write(repo):
    with pytest.raises(ValidationError):
        repo.create(GRADES, {
            "student_id": "s1", "student_name": "Ada Obi",
            "course_id": "c1", "course_name": "Math (MATH101)",
            "exam": 45, "total_marks": 50, "status": "Pass", "pass_mark": 50, "term": "T1",
        })


def test_natural_key_ids_are_stable_and_distinct():
    assert natural_key_id("enrollment", "s1", "c1") == natural_key_id("enrollment", "s1", "c1")
    assert natural_key_id("enrollment", "s1", "c1") != natural_key_id("enrollment", "c1", "s1")
    assert natural_key_id("enrollment", "s1", "c1") != natural_key_id("assignment", "s1", "c1")


def test_list_filters_by_equality(repo):
    repo.create(STUDENTS, {"full_name": "Ada Obi", "class_id": "c1"})
    repo.create(STUDENTS, {"full_name": "Ben Uche", "class_id": "c2"})

    assert [s.full_name for s in repo.list(STUDENTS, {"class_id": "c1"})] == ["Ada Obi"]
