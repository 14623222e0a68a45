import logging

import pytest

from authorization import ANY_RESOURCE, Caller, Operation, Resource, authorize, require
from conftest import ADMIN, PENDING, SECRETARY, TEACHER_1
from errors import AuthorizationDenied

OWN_COURSE = Resource(course_teacher_id="t1")
OTHER_COURSE = Resource(course_teacher_id="t2")


@pytest.mark.parametrize("operation", list(Operation))
def test_admin_may_do_everything(operation):
    assert authorize(ADMIN, ANY_RESOURCE, operation).allowed


@pytest.mark.parametrize("operation", list(Operation))
def test_pending_profile_is_denied_everything(operation):
    decision = authorize(PENDING, ANY_RESOURCE, operation)
    assert not decision.allowed
    assert decision.reason == "RoleForbidden"


def test_unknown_role_is_denied():
    decision = authorize(Caller(uid="x", role="Parent"), ANY_RESOURCE, Operation.READ_COURSE)
    assert decision.reason == "RoleForbidden"


@pytest.mark.parametrize("caller", [None, Caller(uid="", role="Admin")])
def test_missing_caller_is_unauthenticated(caller):
    decision = authorize(caller, ANY_RESOURCE, Operation.READ_COURSE)
    assert decision.reason == "Unauthenticated"


@pytest.mark.parametrize("operation", [Operation.READ_GRADE, Operation.WRITE_GRADE, Operation.READ_ENROLLMENT])
def test_teacher_owned_operations_require_ownership(operation):
    assert authorize(TEACHER_1, OWN_COURSE, operation).allowed
    assert authorize(TEACHER_1, OTHER_COURSE, operation).reason == "NotOwner"
    assert authorize(TEACHER_1, ANY_RESOURCE, operation).reason == "NotOwner"


@pytest.mark.parametrize("operation", [
    Operation.READ_COURSE,
    Operation.READ_CLASS,
    Operation.READ_STUDENT,
    Operation.READ_ASSIGNMENT,
    Operation.READ_TERM,
    Operation.WRITE_FEEDBACK,
])
def test_teacher_may_browse(operation):
    assert authorize(TEACHER_1, ANY_RESOURCE, operation).allowed


@pytest.mark.parametrize("operation", [
    Operation.WRITE_COURSE,
    Operation.WRITE_CLASS,
    Operation.WRITE_STUDENT,
    Operation.WRITE_ENROLLMENT,
    Operation.WRITE_ASSIGNMENT,
    Operation.WRITE_TERM,
    Operation.MANAGE_USERS,
])
def test_teacher_may_not_mutate_structure(operation):
    assert authorize(TEACHER_1, OWN_COURSE, operation).reason == "RoleForbidden"


@pytest.mark.parametrize("operation", [
    Operation.WRITE_STUDENT,
    Operation.WRITE_CLASS,
    Operation.WRITE_ENROLLMENT,
    Operation.WRITE_ASSIGNMENT,
    Operation.READ_GRADE,
    Operation.READ_ENROLLMENT,
])
def test_secretary_allowed(operation):
    assert authorize(SECRETARY, ANY_RESOURCE, operation).allowed


@pytest.mark.parametrize("operation", [
    Operation.WRITE_GRADE,
    Operation.WRITE_COURSE,
    Operation.WRITE_TERM,
    Operation.WRITE_SETTINGS,
    Operation.MANAGE_USERS,
    Operation.READ_FEEDBACK,
])
def test_secretary_forbidden(operation):
    assert authorize(SECRETARY, OWN_COURSE, operation).reason == "RoleForbidden"


def test_require_raises_and_logs(caplog):
    with caplog.at_level(logging.INFO, logger="authorization"):
        with pytest.raises(AuthorizationDenied) as exc:
            require(TEACHER_1, Operation.WRITE_GRADE, OTHER_COURSE)

    assert exc.value.reason == "NotOwner"
    assert exc.value.to_dict()["reason"] == "NotOwner"
    assert "Denied WriteGrade for uid=t1" in caplog.text


def test_require_passes_silently_when_allowed():
    require(TEACHER_1, Operation.WRITE_GRADE, OWN_COURSE)
