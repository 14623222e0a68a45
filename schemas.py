"""
Database Schemas for the School Academic Records engine

Each Pydantic model corresponds to one document collection. Every document
read from or written to the store is validated against its model, so the
engines never see a loosely-shaped document.
"""

from datetime import date, datetime
from typing import Annotated, Dict, List, Literal, Optional, Type

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

UserRole = Literal["Admin", "Teacher", "Secretary"]
GradeStatus = Literal["Pass", "Fail"]

ROLES = ("Admin", "Teacher", "Secretary")
MAX_COMPONENT_MARK = 100


class Document(BaseModel):
    """Fields every stored document carries."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., description="Globally unique, immutable document id")
    created_at: Optional[datetime] = Field(None, description="Server-assigned creation time")
    updated_at: Optional[datetime] = Field(None, description="Server-assigned last write time")


def _check_iso_date(value: str) -> str:
    date.fromisoformat(value)
    return value


IsoDate = Annotated[str, AfterValidator(_check_iso_date)]


class School(Document):
    """
    Schools collection schema
    Collection name: "schools"
    """
    name: str = Field(..., min_length=1, description="School name")
    type: str = Field(..., description="School type e.g., Secondary, TVET")
    admin_uids: List[str] = Field(default_factory=list, description="UIDs of the school admins")


class UserProfile(Document):
    """
    Users collection schema. The document id is the identity provider uid.
    Collection name: "users"
    """
    email: Optional[str] = None
    role: Optional[UserRole] = Field(None, description="None while the profile awaits role approval")
    school_id: Optional[str] = Field(None, description="Optional tenant tag")
    teacher_group_id: Optional[str] = None
    assigned_course_names: List[str] = Field(default_factory=list, description="Derived: labels of courses taught")

    @property
    def uid(self) -> str:
        return self.id


class Course(Document):
    """
    Courses (subjects) collection schema
    Collection name: "courses"
    """
    name: str = Field(..., min_length=2, max_length=100, description="Subject name e.g., Mathematics")
    code: str = Field(..., min_length=2, max_length=20, pattern=r"^[A-Z0-9\s-]+$", description="Subject code e.g., MATH101")
    description: Optional[str] = Field(None, max_length=500)
    category: str = Field("", description="e.g., General Education, TVET")
    combination: str = Field("", description="e.g., MCB, Software Development")
    teacher_id: Optional[str] = Field(None, description="UID of the owning teacher")
    teacher_name: Optional[str] = Field(None, description="Denormalized teacher display name")

    @property
    def label(self) -> str:
        return f"{self.name} ({self.code})"


class SchoolClass(Document):
    """
    Classes collection schema
    Collection name: "classes"
    """
    name: str = Field(..., min_length=1, max_length=100, description="e.g., Grade 10A")
    description: Optional[str] = Field(None, max_length=500)
    academic_year: Optional[str] = Field(None, description="e.g., 2024-2025")
    secretary_id: Optional[str] = None
    secretary_name: Optional[str] = None
    assigned_courses_count: int = Field(0, ge=0, description="Derived: number of course assignments")


class ClassCourseAssignment(Document):
    """
    Class assignments collection schema (one document per class/course pair)
    Collection name: "classAssignments"
    """
    class_id: str
    class_name: str
    course_id: str
    course_name: str
    assigned_at: datetime


class Student(Document):
    """
    Students collection schema
    Collection name: "students"
    """
    full_name: str = Field(..., min_length=1, max_length=100)
    student_system_id: Optional[str] = Field(None, max_length=50, description="School's own id e.g., S1001")
    email: Optional[str] = None
    class_id: Optional[str] = None
    class_name: Optional[str] = None
    date_of_birth: Optional[IsoDate] = Field(None, description="ISO date YYYY-MM-DD")
    place_of_birth: Optional[str] = Field(None, max_length=100)


class Enrollment(Document):
    """
    Enrollments collection schema (one document per student/course pair)
    Collection name: "enrollments"
    """
    student_id: str
    student_name: str
    course_id: str
    course_name: str
    enrolled_at: datetime


def compute_total(ca1: Optional[float], ca2: Optional[float], exam: Optional[float]) -> float:
    return (ca1 or 0) + (ca2 or 0) + (exam or 0)


def compute_status(total_marks: float, pass_mark: float) -> GradeStatus:
    return "Pass" if total_marks >= pass_mark else "Fail"


class Grade(Document):
    """
    Grades collection schema (one document per student/course/term)
    Collection name: "grades"
    """
    student_id: str
    student_name: str
    course_id: str
    course_name: str
    ca1: Optional[float] = Field(None, ge=0, le=MAX_COMPONENT_MARK)
    ca2: Optional[float] = Field(None, ge=0, le=MAX_COMPONENT_MARK)
    exam: Optional[float] = Field(None, ge=0, le=MAX_COMPONENT_MARK)
    total_marks: float
    status: GradeStatus
    pass_mark: float = Field(..., ge=0, description="Pass mark in force when the grade was written")
    remarks: Optional[str] = Field(None, max_length=200)
    term: str = Field(..., min_length=1, max_length=50)
    entered_by_teacher_id: Optional[str] = None
    entered_by_teacher_email: Optional[str] = None

    @model_validator(mode="after")
    def _derived_fields_match_scores(self):
        total = compute_total(self.ca1, self.ca2, self.exam)
        if self.total_marks != total:
            raise ValueError(f"total_marks {self.total_marks} does not match score components ({total})")
        if self.status != compute_status(total, self.pass_mark):
            raise ValueError(f"status {self.status} is inconsistent with total {total} and pass mark {self.pass_mark}")
        return self


class AcademicTerm(Document):
    """
    Academic terms collection schema
    Collection name: "academicTerms"
    """
    name: str = Field(..., min_length=2, max_length=100, description="e.g., Term 1")
    academic_year: str = Field(..., min_length=4, max_length=50)
    start_date: IsoDate = Field(..., description="ISO date YYYY-MM-DD")
    end_date: IsoDate = Field(..., description="ISO date YYYY-MM-DD")
    is_current: bool = False
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def _end_after_start(self):
        if date.fromisoformat(self.end_date) < date.fromisoformat(self.start_date):
            raise ValueError("End date cannot be before start date.")
        return self


class TeacherGroup(Document):
    """
    Teacher groups collection schema
    Collection name: "teacherGroups"
    """
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    member_teacher_ids: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None


class Feedback(Document):
    """
    Feedback collection schema
    Collection name: "feedbacks"
    """
    message: str = Field(..., min_length=1)
    name: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Please enter your feedback message.")
        return v.strip()


class SystemSettings(Document):
    """
    System settings collection schema (single document "generalConfig")
    Collection name: "systemSettings"
    """
    default_academic_year: Optional[str] = None
    default_term: Optional[str] = None
    updated_by: Optional[str] = None


SCHOOLS = "schools"
USERS = "users"
COURSES = "courses"
CLASSES = "classes"
CLASS_ASSIGNMENTS = "classAssignments"
STUDENTS = "students"
ENROLLMENTS = "enrollments"
GRADES = "grades"
ACADEMIC_TERMS = "academicTerms"
TEACHER_GROUPS = "teacherGroups"
FEEDBACKS = "feedbacks"
SYSTEM_SETTINGS = "systemSettings"

SETTINGS_DOC_ID = "generalConfig"

COLLECTIONS: Dict[str, Type[Document]] = {
    SCHOOLS: School,
    USERS: UserProfile,
    COURSES: Course,
    CLASSES: SchoolClass,
    CLASS_ASSIGNMENTS: ClassCourseAssignment,
    STUDENTS: Student,
    ENROLLMENTS: Enrollment,
    GRADES: Grade,
    ACADEMIC_TERMS: AcademicTerm,
    TEACHER_GROUPS: TeacherGroup,
    FEEDBACKS: Feedback,
    SYSTEM_SETTINGS: SystemSettings,
}
