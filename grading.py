"""
Grading engine.

Grades are keyed by (student, course, term). Every write recomputes
total_marks and status from the submitted score components and the pass
mark the engine was configured with; callers never supply either field.
"""

import logging
from numbers import Real
from typing import Any, Dict, List, Mapping, Optional, Tuple

from authorization import Caller, Operation, Resource, authorize, require
from database import DocumentStore
from errors import InvalidScore
from repository import Repository, natural_key_id, run_atomic
from schemas import COURSES, GRADES, MAX_COMPONENT_MARK, STUDENTS, Grade, GradeStatus, compute_status, compute_total

logger = logging.getLogger(__name__)

SCORE_FIELDS = ("ca1", "ca2", "exam")
DERIVED_FIELDS = ("total_marks", "status")


def grade_id(student_id: str, course_id: str, term: str) -> str:
    return natural_key_id("grade", student_id, course_id, term)


def clean_scores(scores: Mapping[str, Any]) -> Dict[str, Optional[float]]:
    """Validate submitted score components; at least one must be present."""
    derived = [k for k in DERIVED_FIELDS if k in scores]
    if derived:
        raise InvalidScore(f"{', '.join(derived)} are computed from the scores and cannot be submitted")
    unknown = [k for k in scores if k not in SCORE_FIELDS]
    if unknown:
        raise InvalidScore(f"Unknown score components: {', '.join(unknown)}")

    cleaned: Dict[str, Optional[float]] = {}
    for name in SCORE_FIELDS:
        value = scores.get(name)
        if value is None:
            cleaned[name] = None
            continue
        if isinstance(value, bool) or not isinstance(value, Real):
            raise InvalidScore(f"{name} must be a number")
        if not 0 <= value <= MAX_COMPONENT_MARK:
            raise InvalidScore(f"{name} must be between 0 and {MAX_COMPONENT_MARK}")
        cleaned[name] = float(value)
    if all(v is None for v in cleaned.values()):
        raise InvalidScore("At least one of ca1, ca2 or exam is required")
    return cleaned


def derive(scores: Mapping[str, Optional[float]], pass_mark: float) -> Tuple[float, GradeStatus]:
    total = compute_total(scores.get("ca1"), scores.get("ca2"), scores.get("exam"))
    return total, compute_status(total, pass_mark)


def recompute_status(grade: Grade, pass_mark: Optional[float] = None) -> GradeStatus:
    """Status the grade would have under pass_mark (defaults to the one it was written with)."""
    total = compute_total(grade.ca1, grade.ca2, grade.exam)
    return compute_status(total, grade.pass_mark if pass_mark is None else pass_mark)


class GradingEngine:
    def __init__(self, store: DocumentStore, pass_mark: float, retries: int = 3, backoff: float = 0.05):
        self.store = store
        self.pass_mark = pass_mark
        self.retries = retries
        self.backoff = backoff

    def upsert_grade(
        self,
        caller: Caller,
        student_id: str,
        course_id: str,
        term: str,
        scores: Mapping[str, Any],
        remarks: Optional[str] = None,
    ) -> Grade:
        repo = Repository(self.store)
        course = repo.get(COURSES, course_id)
        require(caller, Operation.WRITE_GRADE, Resource(course_teacher_id=course.teacher_id))
        cleaned = clean_scores(scores)
        total, status = derive(cleaned, self.pass_mark)

        def op(tx: Repository) -> Grade:
            student = tx.get(STUDENTS, student_id)
            current = tx.get(COURSES, course_id)
            if current.teacher_id != course.teacher_id:
                require(caller, Operation.WRITE_GRADE, Resource(course_teacher_id=current.teacher_id))
            existing = tx.list(GRADES, {"student_id": student_id, "course_id": course_id, "term": term})
            target_id = existing[0].id if existing else grade_id(student_id, course_id, term)
            return tx.replace(GRADES, target_id, {
                "student_id": student_id,
                "student_name": student.full_name,
                "course_id": course_id,
                "course_name": current.label,
                **cleaned,
                "total_marks": total,
                "status": status,
                "pass_mark": self.pass_mark,
                "remarks": remarks,
                "term": term,
                "entered_by_teacher_id": caller.uid,
                "entered_by_teacher_email": caller.email,
            })

        grade = run_atomic(self.store, op, retries=self.retries, backoff=self.backoff)
        logger.info("Grade %s for student %s in course %s (%s): %s %s",
                    grade.id, student_id, course_id, term, total, status)
        return grade

    def get_grade(self, caller: Caller, doc_id: str) -> Grade:
        repo = Repository(self.store)
        grade = repo.get(GRADES, doc_id)
        course = repo.find(COURSES, grade.course_id)
        require(caller, Operation.READ_GRADE, Resource(course_teacher_id=course.teacher_id if course else None))
        return grade

    def list_grades(self, caller: Caller, course_id: str, term: Optional[str] = None) -> List[Grade]:
        repo = Repository(self.store)
        course = repo.get(COURSES, course_id)
        require(caller, Operation.READ_GRADE, Resource(course_teacher_id=course.teacher_id))
        filter_q: Dict[str, Any] = {"course_id": course_id}
        if term:
            filter_q["term"] = term
        grades = repo.list(GRADES, filter_q)
        grades.sort(key=lambda g: (g.student_name, g.term))
        return grades

    def grades_for_student(self, caller: Optional[Caller], student_id: str) -> List[Grade]:
        """Grades of one student, limited to the courses the caller may read."""
        # Teachers read per course, so they are checked grade by grade below.
        if caller is None or not caller.uid or caller.role != "Teacher":
            require(caller, Operation.READ_GRADE)
        repo = Repository(self.store)
        repo.get(STUDENTS, student_id)
        owners: Dict[str, Optional[str]] = {}
        visible = []
        for grade in repo.list(GRADES, {"student_id": student_id}):
            if grade.course_id not in owners:
                course = repo.find(COURSES, grade.course_id)
                owners[grade.course_id] = course.teacher_id if course else None
            resource = Resource(course_teacher_id=owners[grade.course_id])
            if authorize(caller, resource, Operation.READ_GRADE).allowed:
                visible.append(grade)
        return visible
