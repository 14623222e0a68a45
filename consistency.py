"""
Consistency engine.

Every operation that touches more than one collection lives here and runs as
one store transaction: either all of its writes commit or none do. Fan-out
steps are create-if-absent / delete-if-present on documents whose ids derive
from their natural key, so a retried or repeated operation converges on the
same end state instead of duplicating documents.

Derived caches (Class.assigned_courses_count, UserProfile.assigned_course_names)
are recomputed from the authoritative documents inside the same transaction.

Renames are the exception: the owning entity is updated first and the
denormalized copies are fixed up afterwards, one document at a time. Readers
must compare by id, never by the copied name.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from authorization import Caller, Operation, require
from database import DocumentStore
from errors import ReferenceMissing, ValidationError
from repository import Repository, natural_key_id, run_atomic, utcnow
from schemas import (
    CLASS_ASSIGNMENTS,
    CLASSES,
    COURSES,
    ENROLLMENTS,
    GRADES,
    STUDENTS,
    USERS,
    ClassCourseAssignment,
    Course,
    Document,
    Enrollment,
    SchoolClass,
    Student,
)

logger = logging.getLogger(__name__)


@dataclass
class AssignmentOutcome:
    assignment: ClassCourseAssignment
    created: bool
    enrollments_created: int = 0


@dataclass
class UnassignOutcome:
    removed: bool
    enrollments_removed: int = 0


@dataclass
class PlacementOutcome:
    student: Student
    enrollments_created: int = 0
    enrollments_removed: int = 0


@dataclass
class InvariantReport:
    missing_enrollments: List[Tuple[str, str]] = field(default_factory=list)
    orphaned_enrollments: List[str] = field(default_factory=list)
    duplicate_enrollments: List[Tuple[str, str]] = field(default_factory=list)
    count_mismatches: Dict[str, Tuple[int, int]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not (self.missing_enrollments or self.orphaned_enrollments
                    or self.duplicate_enrollments or self.count_mismatches)


def enrollment_id(student_id: str, course_id: str) -> str:
    return natural_key_id("enrollment", student_id, course_id)


def assignment_id(class_id: str, course_id: str) -> str:
    return natural_key_id("assignment", class_id, course_id)


def _ref(repo: Repository, collection: str, doc_id: Optional[str]) -> Document:
    entity = repo.find(collection, doc_id) if doc_id else None
    if entity is None:
        raise ReferenceMissing(collection, doc_id or "")
    return entity


def _reject_fields(patch: Dict[str, Any], fields: Tuple[str, ...], hint: str):
    given = [f for f in fields if f in patch]
    if given:
        raise ValidationError(f"Fields {', '.join(given)} cannot be set directly; {hint}")


class ConsistencyEngine:
    def __init__(self, store: DocumentStore, retries: int = 3, backoff: float = 0.05):
        self.store = store
        self.retries = retries
        self.backoff = backoff

    def _atomic(self, fn):
        return run_atomic(self.store, fn, retries=self.retries, backoff=self.backoff)

    # ------------------- FAN-OUT BUILDING BLOCKS -------------------

    @staticmethod
    def _class_assignments(repo: Repository, class_id: str) -> List[ClassCourseAssignment]:
        return repo.list(CLASS_ASSIGNMENTS, {"class_id": class_id})

    @staticmethod
    def _recount_assignments(repo: Repository, class_id: str) -> int:
        school_class = repo.find(CLASSES, class_id)
        count = len(repo.list(CLASS_ASSIGNMENTS, {"class_id": class_id}))
        if school_class is not None and school_class.assigned_courses_count != count:
            repo.update(CLASSES, class_id, {"assigned_courses_count": count})
        return count

    @staticmethod
    def _ensure_enrollment(repo: Repository, student: Student, course: Course) -> bool:
        _, created = repo.create_if_absent(ENROLLMENTS, enrollment_id(student.id, course.id), {
            "student_id": student.id,
            "student_name": student.full_name,
            "course_id": course.id,
            "course_name": course.label,
            "enrolled_at": utcnow(),
        })
        return created

    @staticmethod
    def _drop_enrollments(repo: Repository, student_id: str, course_id: str) -> int:
        removed = 0
        for enrollment in repo.list(ENROLLMENTS, {"student_id": student_id, "course_id": course_id}):
            if repo.delete_if_present(ENROLLMENTS, enrollment.id):
                removed += 1
        return removed

    @staticmethod
    def _refresh_teacher_cache(repo: Repository, uid: Optional[str]):
        if not uid:
            return
        profile = repo.find(USERS, uid)
        if profile is None:
            return
        labels = sorted(c.label for c in repo.list(COURSES, {"teacher_id": uid}))
        if profile.assigned_course_names != labels:
            repo.update(USERS, uid, {"assigned_course_names": labels})

    def _place_student(self, repo: Repository, student: Student, new_class: Optional[SchoolClass]) -> PlacementOutcome:
        """
        Move a student into new_class (or out of any class when None).

        Enrollments derived from the old class are dropped unless the new
        class carries the same course, then every assignment of the new class
        gets its enrollment.
        """
        new_assignments = self._class_assignments(repo, new_class.id) if new_class else []
        new_course_ids = {a.course_id for a in new_assignments}
        outcome = PlacementOutcome(student=student)

        if student.class_id and (new_class is None or student.class_id != new_class.id):
            for old in self._class_assignments(repo, student.class_id):
                if old.course_id not in new_course_ids:
                    outcome.enrollments_removed += self._drop_enrollments(repo, student.id, old.course_id)

        outcome.student = repo.update(STUDENTS, student.id, {
            "class_id": new_class.id if new_class else None,
            "class_name": new_class.name if new_class else None,
        })
        for assignment in new_assignments:
            course = _ref(repo, COURSES, assignment.course_id)
            if self._ensure_enrollment(repo, outcome.student, course):
                outcome.enrollments_created += 1
        return outcome

    def _assign_teacher(self, repo: Repository, course: Course, teacher_uid: Optional[str]) -> Course:
        teacher_name = None
        if teacher_uid:
            profile = _ref(repo, USERS, teacher_uid)
            if profile.role != "Teacher":
                raise ValidationError(f"User '{teacher_uid}' is not a teacher")
            teacher_name = profile.email or profile.id
        previous = course.teacher_id
        course = repo.update(COURSES, course.id, {"teacher_id": teacher_uid or None, "teacher_name": teacher_name})
        self._refresh_teacher_cache(repo, previous)
        if teacher_uid != previous:
            self._refresh_teacher_cache(repo, teacher_uid)
        return course

    # ------------------- CLASS / COURSE ASSIGNMENT -------------------

    def assign_course_to_class(self, caller: Caller, class_id: str, course_id: str) -> AssignmentOutcome:
        """
        Link a course to a class and enroll every student of the class in it.

        Assigning a pair that is already linked is not an error: the call
        completes any missing enrollments and reports created=False.
        """
        require(caller, Operation.WRITE_ASSIGNMENT)

        def op(repo: Repository) -> AssignmentOutcome:
            school_class = _ref(repo, CLASSES, class_id)
            course = _ref(repo, COURSES, course_id)
            assignment, created = repo.create_if_absent(CLASS_ASSIGNMENTS, assignment_id(class_id, course_id), {
                "class_id": class_id,
                "class_name": school_class.name,
                "course_id": course_id,
                "course_name": course.label,
                "assigned_at": utcnow(),
            })
            self._recount_assignments(repo, class_id)
            outcome = AssignmentOutcome(assignment=assignment, created=created)
            for student in repo.list(STUDENTS, {"class_id": class_id}):
                if self._ensure_enrollment(repo, student, course):
                    outcome.enrollments_created += 1
            return outcome

        outcome = self._atomic(op)
        logger.info(
            "Assigned course %s to class %s (new=%s, enrollments created=%d)",
            course_id, class_id, outcome.created, outcome.enrollments_created,
        )
        return outcome

    def unassign_course_from_class(self, caller: Caller, class_id: str, course_id: str) -> UnassignOutcome:
        """
        Remove a course from a class together with the enrollments it produced.
        Grades are kept.
        """
        require(caller, Operation.WRITE_ASSIGNMENT)

        def op(repo: Repository) -> UnassignOutcome:
            _ref(repo, CLASSES, class_id)
            removed = False
            for assignment in repo.list(CLASS_ASSIGNMENTS, {"class_id": class_id, "course_id": course_id}):
                removed = repo.delete_if_present(CLASS_ASSIGNMENTS, assignment.id) or removed
            self._recount_assignments(repo, class_id)
            outcome = UnassignOutcome(removed=removed)
            for student in repo.list(STUDENTS, {"class_id": class_id}):
                outcome.enrollments_removed += self._drop_enrollments(repo, student.id, course_id)
            return outcome

        outcome = self._atomic(op)
        logger.info(
            "Unassigned course %s from class %s (removed=%s, enrollments removed=%d)",
            course_id, class_id, outcome.removed, outcome.enrollments_removed,
        )
        return outcome

    def list_class_courses(self, caller: Caller, class_id: str) -> List[ClassCourseAssignment]:
        require(caller, Operation.READ_ASSIGNMENT)
        repo = Repository(self.store)
        repo.get(CLASSES, class_id)
        return self._class_assignments(repo, class_id)

    # ------------------- STUDENT PLACEMENT -------------------

    def enroll_student_in_class(self, caller: Caller, student_id: str, class_id: str) -> PlacementOutcome:
        require(caller, Operation.WRITE_ENROLLMENT)

        def op(repo: Repository) -> PlacementOutcome:
            student = _ref(repo, STUDENTS, student_id)
            school_class = _ref(repo, CLASSES, class_id)
            return self._place_student(repo, student, school_class)

        outcome = self._atomic(op)
        logger.info("Placed student %s in class %s (+%d/-%d enrollments)",
                    student_id, class_id, outcome.enrollments_created, outcome.enrollments_removed)
        return outcome

    def transfer_student(self, caller: Caller, student_id: str, new_class_id: str) -> PlacementOutcome:
        """Move a student to another class; old-class enrollments the new class lacks are dropped."""
        require(caller, Operation.WRITE_ENROLLMENT)

        def op(repo: Repository) -> PlacementOutcome:
            student = _ref(repo, STUDENTS, student_id)
            new_class = _ref(repo, CLASSES, new_class_id)
            return self._place_student(repo, student, new_class)

        outcome = self._atomic(op)
        logger.info("Transferred student %s to class %s (+%d/-%d enrollments)",
                    student_id, new_class_id, outcome.enrollments_created, outcome.enrollments_removed)
        return outcome

    def remove_student_from_class(self, caller: Caller, student_id: str) -> PlacementOutcome:
        require(caller, Operation.WRITE_ENROLLMENT)

        def op(repo: Repository) -> PlacementOutcome:
            return self._place_student(repo, _ref(repo, STUDENTS, student_id), None)

        return self._atomic(op)

    def enroll_student_in_course(self, caller: Caller, student_id: str, course_id: str) -> Enrollment:
        """Single enrollment outside any class assignment."""
        require(caller, Operation.WRITE_ENROLLMENT)

        def op(repo: Repository) -> Enrollment:
            student = _ref(repo, STUDENTS, student_id)
            course = _ref(repo, COURSES, course_id)
            self._ensure_enrollment(repo, student, course)
            return repo.get(ENROLLMENTS, enrollment_id(student_id, course_id))

        return self._atomic(op)

    def drop_enrollment(self, caller: Caller, student_id: str, course_id: str) -> int:
        require(caller, Operation.WRITE_ENROLLMENT)

        def op(repo: Repository) -> int:
            student = _ref(repo, STUDENTS, student_id)
            if student.class_id and repo.find(CLASS_ASSIGNMENTS, assignment_id(student.class_id, course_id)):
                raise ValidationError(
                    "This enrollment comes from the student's class; unassign the course or transfer the student instead"
                )
            return self._drop_enrollments(repo, student_id, course_id)

        return self._atomic(op)

    # ------------------- ENTITY LIFECYCLE -------------------

    def create_course(self, caller: Caller, data: Dict[str, Any]) -> Course:
        require(caller, Operation.WRITE_COURSE)
        data = dict(data)
        teacher_uid = data.pop("teacher_id", None)
        _reject_fields(data, ("teacher_name",), "it is copied from the teacher's profile")

        def op(repo: Repository) -> Course:
            course = repo.create(COURSES, data)
            if teacher_uid:
                course = self._assign_teacher(repo, course, teacher_uid)
            return course

        return self._atomic(op)

    def update_course(self, caller: Caller, course_id: str, patch: Dict[str, Any]) -> Course:
        require(caller, Operation.WRITE_COURSE)
        _reject_fields(patch, ("teacher_id", "teacher_name"), "use set_course_teacher")

        def op(repo: Repository) -> Tuple[Course, bool]:
            before = repo.get(COURSES, course_id)
            course = repo.update(COURSES, course_id, patch)
            relabelled = course.label != before.label
            if relabelled:
                self._refresh_teacher_cache(repo, course.teacher_id)
            return course, relabelled

        course, relabelled = self._atomic(op)
        if relabelled:
            self.propagate_course_name(course_id)
        return course

    def rename_course(self, caller: Caller, course_id: str, name: str) -> Course:
        return self.update_course(caller, course_id, {"name": name})

    def set_course_teacher(self, caller: Caller, course_id: str, teacher_uid: Optional[str]) -> Course:
        require(caller, Operation.WRITE_COURSE)

        def op(repo: Repository) -> Course:
            return self._assign_teacher(repo, repo.get(COURSES, course_id), teacher_uid)

        course = self._atomic(op)
        logger.info("Course %s teacher set to %s", course_id, teacher_uid)
        return course

    def delete_course(self, caller: Caller, course_id: str):
        """Delete a course with its assignments and enrollments. Grades are kept."""
        require(caller, Operation.WRITE_COURSE)

        def op(repo: Repository):
            course = repo.get(COURSES, course_id)
            touched_classes: Set[str] = set()
            for assignment in repo.list(CLASS_ASSIGNMENTS, {"course_id": course_id}):
                repo.delete_if_present(CLASS_ASSIGNMENTS, assignment.id)
                touched_classes.add(assignment.class_id)
            for enrollment in repo.list(ENROLLMENTS, {"course_id": course_id}):
                repo.delete_if_present(ENROLLMENTS, enrollment.id)
            repo.delete(COURSES, course_id)
            for class_id in touched_classes:
                self._recount_assignments(repo, class_id)
            self._refresh_teacher_cache(repo, course.teacher_id)

        self._atomic(op)
        logger.info("Deleted course %s", course_id)

    def create_class(self, caller: Caller, data: Dict[str, Any]) -> SchoolClass:
        require(caller, Operation.WRITE_CLASS)
        _reject_fields(data, ("assigned_courses_count",), "it is derived from class assignments")
        payload = {"secretary_id": caller.uid, "secretary_name": caller.email, **data}
        return Repository(self.store).create(CLASSES, payload)

    def update_class(self, caller: Caller, class_id: str, patch: Dict[str, Any]) -> SchoolClass:
        require(caller, Operation.WRITE_CLASS)
        _reject_fields(patch, ("assigned_courses_count",), "it is derived from class assignments")

        def op(repo: Repository) -> Tuple[SchoolClass, bool]:
            before = repo.get(CLASSES, class_id)
            school_class = repo.update(CLASSES, class_id, patch)
            return school_class, school_class.name != before.name

        school_class, renamed = self._atomic(op)
        if renamed:
            self.propagate_class_name(class_id)
        return school_class

    def rename_class(self, caller: Caller, class_id: str, name: str) -> SchoolClass:
        return self.update_class(caller, class_id, {"name": name})

    def delete_class(self, caller: Caller, class_id: str):
        """Delete a class, its assignments and the enrollments they produced; students stay, unplaced."""
        require(caller, Operation.WRITE_CLASS)

        def op(repo: Repository):
            repo.get(CLASSES, class_id)
            for student in repo.list(STUDENTS, {"class_id": class_id}):
                self._place_student(repo, student, None)
            for assignment in self._class_assignments(repo, class_id):
                repo.delete_if_present(CLASS_ASSIGNMENTS, assignment.id)
            repo.delete(CLASSES, class_id)

        self._atomic(op)
        logger.info("Deleted class %s", class_id)

    def create_student(self, caller: Caller, data: Dict[str, Any]) -> Student:
        require(caller, Operation.WRITE_STUDENT)
        data = dict(data)
        class_id = data.pop("class_id", None)
        _reject_fields(data, ("class_name",), "it is copied from the class")

        def op(repo: Repository) -> Student:
            student = repo.create(STUDENTS, data)
            if class_id:
                student = self._place_student(repo, student, _ref(repo, CLASSES, class_id)).student
            return student

        return self._atomic(op)

    def update_student(self, caller: Caller, student_id: str, patch: Dict[str, Any]) -> Student:
        require(caller, Operation.WRITE_STUDENT)
        _reject_fields(patch, ("class_id", "class_name"), "enroll or transfer the student instead")

        def op(repo: Repository) -> Tuple[Student, bool]:
            before = repo.get(STUDENTS, student_id)
            student = repo.update(STUDENTS, student_id, patch)
            return student, student.full_name != before.full_name

        student, renamed = self._atomic(op)
        if renamed:
            self.propagate_student_name(student_id)
        return student

    def rename_student(self, caller: Caller, student_id: str, full_name: str) -> Student:
        return self.update_student(caller, student_id, {"full_name": full_name})

    def delete_student(self, caller: Caller, student_id: str):
        """Delete a student and their enrollments. Grades are kept."""
        require(caller, Operation.WRITE_STUDENT)

        def op(repo: Repository):
            repo.get(STUDENTS, student_id)
            for enrollment in repo.list(ENROLLMENTS, {"student_id": student_id}):
                repo.delete_if_present(ENROLLMENTS, enrollment.id)
            repo.delete(STUDENTS, student_id)

        self._atomic(op)
        logger.info("Deleted student %s", student_id)

    # ------------------- RENAME PROPAGATION -------------------

    def _propagate(self, collections: Tuple[str, ...], key: str, owner_id: str, field_name: str, value: str) -> int:
        """Fix one denormalized field on every referencing document, one transaction per document."""
        repo = Repository(self.store)
        updated = 0
        for collection in collections:
            for doc in repo.list(collection, {key: owner_id}):
                if getattr(doc, field_name) == value:
                    continue

                def op(tx: Repository, collection=collection, doc_id=doc.id) -> bool:
                    current = tx.find(collection, doc_id)
                    # Deleted or re-pointed since the scan.
                    if current is None or getattr(current, key) != owner_id or getattr(current, field_name) == value:
                        return False
                    tx.update(collection, doc_id, {field_name: value})
                    return True

                if self._atomic(op):
                    updated += 1
        return updated

    def propagate_course_name(self, course_id: str) -> int:
        """
        Rewrite course_name on every document referencing the course.
        Re-resolves the current label, so it can be re-run at any time.
        """
        course = Repository(self.store).get(COURSES, course_id)
        updated = self._propagate((CLASS_ASSIGNMENTS, ENROLLMENTS, GRADES), "course_id", course_id, "course_name", course.label)
        logger.info("Propagated course name for %s to %d documents", course_id, updated)
        return updated

    def propagate_class_name(self, class_id: str) -> int:
        school_class = Repository(self.store).get(CLASSES, class_id)
        updated = self._propagate((CLASS_ASSIGNMENTS, STUDENTS), "class_id", class_id, "class_name", school_class.name)
        logger.info("Propagated class name for %s to %d documents", class_id, updated)
        return updated

    def propagate_student_name(self, student_id: str) -> int:
        student = Repository(self.store).get(STUDENTS, student_id)
        updated = self._propagate((ENROLLMENTS, GRADES), "student_id", student_id, "student_name", student.full_name)
        logger.info("Propagated student name for %s to %d documents", student_id, updated)
        return updated

    # ------------------- INVARIANT CHECK -------------------

    def check_invariants(self) -> InvariantReport:
        """Scan students, assignments and enrollments for violations of the enrollment invariants."""
        repo = Repository(self.store)
        report = InvariantReport()
        student_ids = {s.id: s for s in repo.list(STUDENTS)}
        course_ids = {c.id for c in repo.list(COURSES)}

        assignments_by_class: Dict[str, List[str]] = {}
        for assignment in repo.list(CLASS_ASSIGNMENTS):
            assignments_by_class.setdefault(assignment.class_id, []).append(assignment.course_id)

        pairs: Dict[Tuple[str, str], int] = {}
        for enrollment in repo.list(ENROLLMENTS):
            key = (enrollment.student_id, enrollment.course_id)
            pairs[key] = pairs.get(key, 0) + 1
            if enrollment.student_id not in student_ids or enrollment.course_id not in course_ids:
                report.orphaned_enrollments.append(enrollment.id)
        report.duplicate_enrollments = sorted(k for k, n in pairs.items() if n > 1)

        for student in student_ids.values():
            for course_id in assignments_by_class.get(student.class_id, []) if student.class_id else []:
                if (student.id, course_id) not in pairs:
                    report.missing_enrollments.append((student.id, course_id))

        for school_class in repo.list(CLASSES):
            actual = len(assignments_by_class.get(school_class.id, []))
            if school_class.assigned_courses_count != actual:
                report.count_mismatches[school_class.id] = (school_class.assigned_courses_count, actual)
        return report
