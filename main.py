import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from accounts import AccountService, Identity
from authorization import Caller, Operation, Resource, require
from consistency import ConsistencyEngine
from database import DocumentStore, create_store
from errors import (
    AuthorizationDenied,
    Conflict,
    NotFound,
    RecordsError,
    ReferenceMissing,
    TransientStoreError,
    ValidationError,
)
from grading import GradingEngine
from records import RecordsService
from repository import Repository
from schemas import CLASSES, COLLECTIONS, COURSES, ENROLLMENTS, STUDENTS, UserRole
from settings import Settings, load_settings

settings = load_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="School Academic Records API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@dataclass
class Services:
    store: DocumentStore
    accounts: AccountService
    consistency: ConsistencyEngine
    grading: GradingEngine
    records: RecordsService


def build_services(config: Settings, store: Optional[DocumentStore] = None) -> Services:
    store = store or create_store(config)
    retry = {"retries": config.transaction_retries, "backoff": config.retry_backoff_seconds}
    return Services(
        store=store,
        accounts=AccountService(store, **retry),
        consistency=ConsistencyEngine(store, **retry),
        grading=GradingEngine(store, pass_mark=config.pass_mark, **retry),
        records=RecordsService(store, **retry),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(settings)
    return _services


def get_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> Optional[Identity]:
    """Identity asserted by the upstream authentication provider."""
    if not x_user_id:
        return None
    return Identity(uid=x_user_id, email=x_user_email)


def get_caller(
    identity: Optional[Identity] = Depends(get_identity),
    services: Services = Depends(get_services),
) -> Optional[Caller]:
    return services.accounts.caller_for(identity)


# ------------------- ERROR HANDLING -------------------

def _status_for(exc: RecordsError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, (ReferenceMissing, Conflict)):
        return 409
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, AuthorizationDenied):
        return 401 if exc.reason == "Unauthenticated" else 403
    if isinstance(exc, TransientStoreError):
        return 503
    return 500


@app.exception_handler(RecordsError)
def handle_records_error(request: Request, exc: RecordsError):
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/")
def read_root():
    return {"message": "School Academic Records Backend"}


@app.get("/test")
def test_database(services: Services = Depends(get_services)):
    """Test endpoint to check if the document store is available and accessible"""
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": getattr(services.store, "name", None),
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        services.store.ping()
        response["connection_status"] = "Connected"
        response["collections"] = services.store.collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except RecordsError as e:
        response["database"] = f"⚠️  Connected but Error: {e.message[:50]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response


# ------------------- API MODELS -------------------
class ApiModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SchoolCreate(ApiModel):
    name: str
    type: str


class RoleUpdate(ApiModel):
    role: Optional[UserRole] = Field(None, description="None puts the profile back into pending")


class CourseCreate(ApiModel):
    name: str
    code: str
    description: Optional[str] = None
    category: str = ""
    combination: str = ""
    teacher_id: Optional[str] = None


class CourseUpdate(ApiModel):
    name: Optional[str] = None
    code: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    combination: Optional[str] = None


class TeacherAssignment(ApiModel):
    teacher_id: Optional[str] = None


class ClassCreate(ApiModel):
    name: str
    description: Optional[str] = None
    academic_year: Optional[str] = None


class ClassUpdate(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    academic_year: Optional[str] = None


class StudentCreate(ApiModel):
    full_name: str
    student_system_id: Optional[str] = None
    email: Optional[str] = None
    class_id: Optional[str] = None
    date_of_birth: Optional[str] = None
    place_of_birth: Optional[str] = None


class StudentUpdate(ApiModel):
    full_name: Optional[str] = None
    student_system_id: Optional[str] = None
    email: Optional[str] = None
    date_of_birth: Optional[str] = None
    place_of_birth: Optional[str] = None


class ClassPlacement(ApiModel):
    class_id: str


class EnrollmentCreate(ApiModel):
    student_id: str
    course_id: str


class GradeUpsert(ApiModel):
    student_id: str
    course_id: str
    term: str
    ca1: Optional[float] = None
    ca2: Optional[float] = None
    exam: Optional[float] = None
    remarks: Optional[str] = None


class TermCreate(ApiModel):
    name: str
    academic_year: str
    start_date: str
    end_date: str
    is_current: bool = False


class TermUpdate(ApiModel):
    name: Optional[str] = None
    academic_year: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    is_current: Optional[bool] = None


class TeacherGroupIn(ApiModel):
    name: str
    description: Optional[str] = None
    member_teacher_ids: List[str] = []


class FeedbackIn(ApiModel):
    message: str
    name: Optional[str] = None


class SettingsUpdate(ApiModel):
    default_academic_year: Optional[str] = None
    default_term: Optional[str] = None


def _patch(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(exclude_unset=True)


# ------------------- API ROUTES -------------------
# Users & schools

@app.post("/session")
def start_session(identity: Optional[Identity] = Depends(get_identity), services: Services = Depends(get_services)):
    """Called after each login; creates a pending profile on first sight."""
    if identity is None:
        raise AuthorizationDenied("Unauthenticated", "You must be logged in to perform this action.")
    return services.accounts.ensure_profile(identity)


@app.post("/schools", status_code=201)
def register_school(
    payload: SchoolCreate,
    identity: Optional[Identity] = Depends(get_identity),
    services: Services = Depends(get_services),
):
    if identity is None:
        raise AuthorizationDenied("Unauthenticated", "You must be logged in to perform this action.")
    return services.accounts.register_school(identity, payload.name, payload.type)


@app.get("/users")
def list_users(
    role: Optional[str] = None,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.accounts.list_profiles(caller, role)


@app.put("/users/{uid}/role")
def update_user_role(
    uid: str,
    payload: RoleUpdate,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.accounts.set_role(caller, uid, payload.role)


# Courses

@app.post("/courses", status_code=201)
def create_course(payload: CourseCreate, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.consistency.create_course(caller, _patch(payload))


@app.get("/courses")
def list_courses(
    teacher_id: Optional[str] = None,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    require(caller, Operation.READ_COURSE)
    filter_q = {"teacher_id": teacher_id} if teacher_id else {}
    courses = Repository(services.store).list(COURSES, filter_q)
    courses.sort(key=lambda c: c.name)
    return courses


@app.get("/courses/{course_id}")
def get_course(course_id: str, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    require(caller, Operation.READ_COURSE)
    return Repository(services.store).get(COURSES, course_id)


@app.patch("/courses/{course_id}")
def update_course(
    course_id: str,
    payload: CourseUpdate,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.consistency.update_course(caller, course_id, _patch(payload))


@app.put("/courses/{course_id}/teacher")
def set_course_teacher(
    course_id: str,
    payload: TeacherAssignment,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.consistency.set_course_teacher(caller, course_id, payload.teacher_id)


@app.delete("/courses/{course_id}", status_code=204)
def delete_course(course_id: str, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    services.consistency.delete_course(caller, course_id)


# Classes & class-course assignments

@app.post("/classes", status_code=201)
def create_class(payload: ClassCreate, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.consistency.create_class(caller, _patch(payload))


@app.get("/classes")
def list_classes(caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    require(caller, Operation.READ_CLASS)
    classes = Repository(services.store).list(CLASSES)
    classes.sort(key=lambda c: c.name)
    return classes


@app.get("/classes/{class_id}")
def get_class(class_id: str, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    require(caller, Operation.READ_CLASS)
    return Repository(services.store).get(CLASSES, class_id)


@app.patch("/classes/{class_id}")
def update_class(
    class_id: str,
    payload: ClassUpdate,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.consistency.update_class(caller, class_id, _patch(payload))


@app.delete("/classes/{class_id}", status_code=204)
def delete_class(class_id: str, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    services.consistency.delete_class(caller, class_id)


@app.get("/classes/{class_id}/courses")
def list_class_courses(class_id: str, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.consistency.list_class_courses(caller, class_id)


@app.put("/classes/{class_id}/courses/{course_id}")
def assign_course(
    class_id: str,
    course_id: str,
    response: Response,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    outcome = services.consistency.assign_course_to_class(caller, class_id, course_id)
    response.status_code = 201 if outcome.created else 200
    return {
        "assignment": outcome.assignment,
        "created": outcome.created,
        "enrollments_created": outcome.enrollments_created,
    }


@app.delete("/classes/{class_id}/courses/{course_id}")
def unassign_course(
    class_id: str,
    course_id: str,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    outcome = services.consistency.unassign_course_from_class(caller, class_id, course_id)
    return {"removed": outcome.removed, "enrollments_removed": outcome.enrollments_removed}


# Students & enrollments

@app.post("/students", status_code=201)
def create_student(payload: StudentCreate, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.consistency.create_student(caller, _patch(payload))


@app.get("/students")
def list_students(
    class_id: Optional[str] = None,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    require(caller, Operation.READ_STUDENT)
    filter_q = {"class_id": class_id} if class_id else {}
    students = Repository(services.store).list(STUDENTS, filter_q)
    students.sort(key=lambda s: s.full_name)
    return students


@app.get("/students/{student_id}")
def get_student(student_id: str, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    require(caller, Operation.READ_STUDENT)
    return Repository(services.store).get(STUDENTS, student_id)


@app.patch("/students/{student_id}")
def update_student(
    student_id: str,
    payload: StudentUpdate,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.consistency.update_student(caller, student_id, _patch(payload))


@app.delete("/students/{student_id}", status_code=204)
def delete_student(student_id: str, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    services.consistency.delete_student(caller, student_id)


def _placement(outcome):
    return {
        "student": outcome.student,
        "enrollments_created": outcome.enrollments_created,
        "enrollments_removed": outcome.enrollments_removed,
    }


@app.put("/students/{student_id}/class")
def place_student(
    student_id: str,
    payload: ClassPlacement,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    """Enroll a student in a class, or transfer them if they already belong to one."""
    require(caller, Operation.WRITE_ENROLLMENT)
    student = Repository(services.store).get(STUDENTS, student_id)
    if student.class_id and student.class_id != payload.class_id:
        return _placement(services.consistency.transfer_student(caller, student_id, payload.class_id))
    return _placement(services.consistency.enroll_student_in_class(caller, student_id, payload.class_id))


@app.delete("/students/{student_id}/class")
def remove_student_from_class(
    student_id: str,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return _placement(services.consistency.remove_student_from_class(caller, student_id))


@app.get("/enrollments")
def list_enrollments(
    student_id: Optional[str] = None,
    course_id: Optional[str] = None,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    repo = Repository(services.store)
    filter_q: Dict[str, Any] = {}
    resource = Resource()
    if course_id:
        filter_q["course_id"] = course_id
        resource = Resource(course_teacher_id=repo.get(COURSES, course_id).teacher_id)
    if student_id:
        filter_q["student_id"] = student_id
    require(caller, Operation.READ_ENROLLMENT, resource)
    return repo.list(ENROLLMENTS, filter_q)


@app.post("/enrollments", status_code=201)
def create_enrollment(payload: EnrollmentCreate, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.consistency.enroll_student_in_course(caller, payload.student_id, payload.course_id)


@app.delete("/enrollments")
def drop_enrollment(
    student_id: str = Query(...),
    course_id: str = Query(...),
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return {"removed": services.consistency.drop_enrollment(caller, student_id, course_id)}


# Grades

@app.put("/grades")
def upsert_grade(payload: GradeUpsert, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    scores = {"ca1": payload.ca1, "ca2": payload.ca2, "exam": payload.exam}
    return services.grading.upsert_grade(
        caller, payload.student_id, payload.course_id, payload.term, scores, remarks=payload.remarks
    )


@app.get("/grades")
def list_grades(
    course_id: Optional[str] = None,
    student_id: Optional[str] = None,
    term: Optional[str] = None,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    if course_id:
        grades = services.grading.list_grades(caller, course_id, term)
        return [g for g in grades if not student_id or g.student_id == student_id]
    if student_id:
        grades = services.grading.grades_for_student(caller, student_id)
        return [g for g in grades if not term or g.term == term]
    raise ValidationError("Provide course_id or student_id")


@app.get("/grades/{grade_id}")
def get_grade(grade_id: str, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.grading.get_grade(caller, grade_id)


# Terms, teacher groups, feedback, settings

@app.post("/terms", status_code=201)
def create_term(payload: TermCreate, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.records.create_term(caller, _patch(payload))


@app.get("/terms")
def list_terms(caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.records.list_terms(caller)


@app.patch("/terms/{term_id}")
def update_term(
    term_id: str,
    payload: TermUpdate,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.records.update_term(caller, term_id, _patch(payload))


@app.delete("/terms/{term_id}", status_code=204)
def delete_term(term_id: str, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    services.records.delete_term(caller, term_id)


@app.post("/teacher-groups", status_code=201)
def create_teacher_group(payload: TeacherGroupIn, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.records.save_teacher_group(caller, _patch(payload))


@app.put("/teacher-groups/{group_id}")
def update_teacher_group(
    group_id: str,
    payload: TeacherGroupIn,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.records.save_teacher_group(caller, _patch(payload), group_id=group_id)


@app.get("/teacher-groups")
def list_teacher_groups(caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.records.list_teacher_groups(caller)


@app.delete("/teacher-groups/{group_id}", status_code=204)
def delete_teacher_group(group_id: str, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    services.records.delete_teacher_group(caller, group_id)


@app.post("/feedback", status_code=201)
def submit_feedback(payload: FeedbackIn, caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.records.submit_feedback(caller, payload.message, payload.name)


@app.get("/feedback")
def list_feedback(caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.records.list_feedback(caller)


@app.get("/settings")
def get_system_settings(caller: Optional[Caller] = Depends(get_caller), services: Services = Depends(get_services)):
    return services.records.get_settings(caller)


@app.put("/settings")
def update_system_settings(
    payload: SettingsUpdate,
    caller: Optional[Caller] = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.records.update_settings(caller, _patch(payload))


# Schema introspection for helper tools
@app.get("/schema")
def get_schema_models():
    return {name: model.model_json_schema() for name, model in COLLECTIONS.items()}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
