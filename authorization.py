"""
Authorization gate.

Decides, before any engine call, whether a caller may perform an operation
on a resource. The gate is stateless: it only looks at the caller's role and
uid and at the ownership claims carried by the resource, and never reads or
writes the store. Rules are evaluated in a fixed order and the first match
wins:

1. Admin may do everything.
2. Teacher may read/write grades (and read enrollments) only for courses
   they own, and may browse courses, classes, students and terms.
3. Secretary may mutate students, classes, enrollments and class
   assignments, and read everything needed for oversight.
4. Anyone else (no caller, pending or unknown role) is denied.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from errors import AuthorizationDenied

logger = logging.getLogger(__name__)

NOT_OWNER = "NotOwner"
ROLE_FORBIDDEN = "RoleForbidden"
UNAUTHENTICATED = "Unauthenticated"


class Operation(str, Enum):
    READ_COURSE = "ReadCourse"
    WRITE_COURSE = "WriteCourse"
    READ_CLASS = "ReadClass"
    WRITE_CLASS = "WriteClass"
    READ_STUDENT = "ReadStudent"
    WRITE_STUDENT = "WriteStudent"
    READ_ENROLLMENT = "ReadEnrollment"
    WRITE_ENROLLMENT = "WriteEnrollment"
    READ_ASSIGNMENT = "ReadClassCourseAssignment"
    WRITE_ASSIGNMENT = "WriteClassCourseAssignment"
    READ_GRADE = "ReadGrade"
    WRITE_GRADE = "WriteGrade"
    READ_TERM = "ReadTerm"
    WRITE_TERM = "WriteTerm"
    READ_TEACHER_GROUP = "ReadTeacherGroup"
    WRITE_TEACHER_GROUP = "WriteTeacherGroup"
    READ_FEEDBACK = "ReadFeedback"
    WRITE_FEEDBACK = "WriteFeedback"
    READ_SETTINGS = "ReadSettings"
    WRITE_SETTINGS = "WriteSettings"
    READ_USERS = "ReadUsers"
    MANAGE_USERS = "ManageUsers"


@dataclass(frozen=True)
class Caller:
    uid: str
    role: Optional[str]
    email: Optional[str] = None


@dataclass(frozen=True)
class Resource:
    """Ownership claims of the resource being acted upon."""
    course_teacher_id: Optional[str] = None


ANY_RESOURCE = Resource()


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


TEACHER_BROWSE = frozenset({
    Operation.READ_COURSE,
    Operation.READ_CLASS,
    Operation.READ_STUDENT,
    Operation.READ_ASSIGNMENT,
    Operation.READ_TERM,
    Operation.READ_SETTINGS,
})
TEACHER_OWNED = frozenset({Operation.READ_GRADE, Operation.WRITE_GRADE, Operation.READ_ENROLLMENT})

SECRETARY_WRITES = frozenset({
    Operation.WRITE_STUDENT,
    Operation.WRITE_CLASS,
    Operation.WRITE_ENROLLMENT,
    Operation.WRITE_ASSIGNMENT,
})
SECRETARY_READS = frozenset({
    Operation.READ_COURSE,
    Operation.READ_CLASS,
    Operation.READ_STUDENT,
    Operation.READ_ENROLLMENT,
    Operation.READ_ASSIGNMENT,
    Operation.READ_GRADE,
    Operation.READ_TERM,
    Operation.READ_SETTINGS,
})

# Open to any authenticated user with an approved role.
OPEN_OPERATIONS = frozenset({Operation.WRITE_FEEDBACK})


def _teacher(caller: Caller, resource: Resource, operation: Operation) -> Decision:
    if operation in TEACHER_OWNED:
        if resource.course_teacher_id and resource.course_teacher_id == caller.uid:
            return ALLOW
        return deny(NOT_OWNER)
    if operation in TEACHER_BROWSE or operation in OPEN_OPERATIONS:
        return ALLOW
    return deny(ROLE_FORBIDDEN)


def _secretary(caller: Caller, resource: Resource, operation: Operation) -> Decision:
    if operation in SECRETARY_WRITES or operation in SECRETARY_READS or operation in OPEN_OPERATIONS:
        return ALLOW
    return deny(ROLE_FORBIDDEN)


def authorize(caller: Optional[Caller], resource: Resource, operation: Operation) -> Decision:
    if caller is None or not caller.uid:
        return deny(UNAUTHENTICATED)
    if caller.role == "Admin":
        return ALLOW
    if caller.role == "Teacher":
        return _teacher(caller, resource, operation)
    if caller.role == "Secretary":
        return _secretary(caller, resource, operation)
    return deny(ROLE_FORBIDDEN)


DENIAL_MESSAGES = {
    NOT_OWNER: "You can only manage grades for courses assigned to you.",
    ROLE_FORBIDDEN: "Your role does not permit this action.",
    UNAUTHENTICATED: "You must be logged in to perform this action.",
}


def require(caller: Optional[Caller], operation: Operation, resource: Resource = ANY_RESOURCE):
    """Raise AuthorizationDenied unless the gate allows the operation."""
    decision = authorize(caller, resource, operation)
    if not decision.allowed:
        logger.info(
            "Denied %s for uid=%s role=%s: %s",
            operation.value, getattr(caller, "uid", None), getattr(caller, "role", None), decision.reason,
        )
        raise AuthorizationDenied(decision.reason, DENIAL_MESSAGES[decision.reason])
