import pytest

from conftest import ADMIN, PENDING, SECRETARY, TEACHER_1, TEACHER_2
from errors import AuthorizationDenied, ValidationError
from schemas import USERS


def term(name, start, end, current=False):
    return {"name": name, "academic_year": "2024-2025", "start_date": start, "end_date": end, "is_current": current}


def test_only_one_current_term(records):
    first = records.create_term(ADMIN, term("Term 1", "2024-09-01", "2024-12-15", current=True))
    second = records.create_term(ADMIN, term("Term 2", "2025-01-06", "2025-04-01", current=True))

    terms = records.list_terms(TEACHER_1)
    assert [t.id for t in terms] == [second.id, first.id]
    assert [t.is_current for t in terms] == [True, False]

    records.update_term(ADMIN, first.id, {"is_current": True})
    assert [t.is_current for t in records.list_terms(SECRETARY)] == [False, True]


def test_term_dates_are_checked(records):
    with pytest.raises(ValidationError):
        records.create_term(ADMIN, term("Term 1", "2024-12-15", "2024-09-01"))


def test_terms_are_admin_managed(records):
    with pytest.raises(AuthorizationDenied):
        records.create_term(SECRETARY, term("Term 1", "2024-09-01", "2024-12-15"))


def test_teacher_group_syncs_member_profiles(records, repo):
    group = records.save_teacher_group(ADMIN, {"name": "Sciences", "member_teacher_ids": ["t1", "t2", "t1"]})
    assert group.member_teacher_ids == ["t1", "t2"]
    assert repo.get(USERS, "t2").teacher_group_id == group.id

    records.save_teacher_group(ADMIN, {"name": "Sciences", "member_teacher_ids": ["t1"]}, group_id=group.id)
    assert repo.get(USERS, "t2").teacher_group_id is None

    records.delete_teacher_group(ADMIN, group.id)
    assert repo.get(USERS, "t1").teacher_group_id is None
    assert records.list_teacher_groups(ADMIN) == []


def test_teacher_group_members_must_be_teachers(records):
    with pytest.raises(ValidationError):
        records.save_teacher_group(ADMIN, {"name": "Office", "member_teacher_ids": ["sec1"]})


def test_feedback_from_any_approved_role(records):
    records.submit_feedback(TEACHER_2, "  The grade sheet is slow  ", name="T2")
    records.submit_feedback(SECRETARY, "Please add a print button")

    by_message = {f.message: f for f in records.list_feedback(ADMIN)}
    assert set(by_message) == {"Please add a print button", "The grade sheet is slow"}
    assert by_message["The grade sheet is slow"].user_id == "t2"
    assert by_message["The grade sheet is slow"].name == "T2"
    with pytest.raises(AuthorizationDenied):
        records.submit_feedback(PENDING, "hello")
    with pytest.raises(ValidationError):
        records.submit_feedback(TEACHER_1, "   ")


def test_settings_default_and_update(records):
    assert records.get_settings(TEACHER_1).default_term is None

    records.update_settings(ADMIN, {"default_academic_year": "2024-2025"})
    settings = records.update_settings(ADMIN, {"default_term": "Term 1"})

    assert settings.default_academic_year == "2024-2025"
    assert settings.default_term == "Term 1"
    assert settings.updated_by == "admin1"
    with pytest.raises(AuthorizationDenied):
        records.update_settings(SECRETARY, {"default_term": "Term 2"})
