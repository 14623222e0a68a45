from conftest import ADMIN, PENDING, SECRETARY, TEACHER_1, TEACHER_2, auth


def test_root_and_health(client):
    assert client.get("/").status_code == 200
    body = client.get("/test").json()
    assert body["connection_status"] == "Connected"
    assert body["database_name"] == "memory"


def test_unauthenticated_request(client):
    response = client.get("/courses")
    assert response.status_code == 401
    assert response.json()["reason"] == "Unauthenticated"


def test_pending_profile_is_forbidden(client):
    response = client.get("/courses", headers=auth(PENDING))
    assert response.status_code == 403
    assert response.json() == {
        "code": "AuthorizationDenied",
        "reason": "RoleForbidden",
        "detail": "Your role does not permit this action.",
    }


def test_session_creates_pending_profile(client):
    response = client.post("/session", headers={"X-User-Id": "newcomer", "X-User-Email": "n@school.test"})
    assert response.status_code == 200
    assert response.json()["role"] is None

    promoted = client.put("/users/newcomer/role", json={"role": "Secretary"}, headers=auth(ADMIN))
    assert promoted.json()["role"] == "Secretary"


def test_school_registration_is_bootstrap_only(client):
    response = client.post("/schools", json={"name": "Hill School", "type": "Secondary"}, headers=auth(PENDING))
    assert response.status_code == 422


def test_class_course_flow(client):
    course = client.post("/courses", json={"name": "Math", "code": "MATH101", "teacher_id": "t1"}, headers=auth(ADMIN))
    assert course.status_code == 201
    course_id = course.json()["id"]
    class_id = client.post("/classes", json={"name": "Grade 10A"}, headers=auth(SECRETARY)).json()["id"]
    student = client.post("/students", json={"full_name": "Ada Obi", "class_id": class_id}, headers=auth(SECRETARY))
    student_id = student.json()["id"]

    first = client.put(f"/classes/{class_id}/courses/{course_id}", headers=auth(SECRETARY))
    again = client.put(f"/classes/{class_id}/courses/{course_id}", headers=auth(SECRETARY))
    assert (first.status_code, again.status_code) == (201, 200)
    assert first.json()["assignment"]["course_name"] == "Math (MATH101)"
    assert first.json()["enrollments_created"] == 1

    enrollments = client.get("/enrollments", params={"course_id": course_id}, headers=auth(TEACHER_1))
    assert [e["student_id"] for e in enrollments.json()] == [student_id]
    assert client.get("/enrollments", params={"course_id": course_id}, headers=auth(TEACHER_2)).status_code == 403

    assert client.get(f"/classes/{class_id}", headers=auth(TEACHER_1)).json()["assigned_courses_count"] == 1

    removed = client.delete(f"/classes/{class_id}/courses/{course_id}", headers=auth(SECRETARY))
    assert removed.json() == {"removed": True, "enrollments_removed": 1}


def test_grade_flow(client):
    course_id = client.post("/courses", json={"name": "Math", "code": "MATH101", "teacher_id": "t1"}, headers=auth(ADMIN)).json()["id"]
    student_id = client.post("/students", json={"full_name": "Ada Obi"}, headers=auth(SECRETARY)).json()["id"]
    payload = {"student_id": student_id, "course_id": course_id, "term": "T1", "ca1": 18, "ca2": 17, "exam": 10}

    response = client.put("/grades", json=payload, headers=auth(TEACHER_1))
    assert response.status_code == 200
    assert (response.json()["total_marks"], response.json()["status"]) == (45, "Pass")

    denied = client.put("/grades", json=payload, headers=auth(TEACHER_2))
    assert denied.status_code == 403
    assert denied.json()["reason"] == "NotOwner"

    empty = client.put("/grades", json={"student_id": student_id, "course_id": course_id, "term": "T1"}, headers=auth(TEACHER_1))
    assert empty.status_code == 422
    assert empty.json()["code"] == "InvalidScore"

    derived = client.put("/grades", json={**payload, "total_marks": 99}, headers=auth(TEACHER_1))
    assert derived.status_code == 422

    listed = client.get("/grades", params={"student_id": student_id}, headers=auth(ADMIN)).json()
    assert [g["term"] for g in listed] == ["T1"]
    assert client.get("/grades", headers=auth(ADMIN)).status_code == 422


def test_error_status_mapping(client):
    assert client.get("/students/missing", headers=auth(SECRETARY)).status_code == 404

    class_id = client.post("/classes", json={"name": "Grade 10A"}, headers=auth(SECRETARY)).json()["id"]
    missing_ref = client.put(f"/classes/{class_id}/courses/missing", headers=auth(SECRETARY))
    assert missing_ref.status_code == 409
    assert missing_ref.json()["code"] == "ReferenceError"

    bad_code = client.post("/courses", json={"name": "Math", "code": "math"}, headers=auth(ADMIN))
    assert bad_code.status_code == 422
    assert bad_code.json()["code"] == "ValidationError"


def test_student_transfer_via_class_placement(client):
    c1 = client.post("/classes", json={"name": "Grade 10A"}, headers=auth(SECRETARY)).json()["id"]
    c2 = client.post("/classes", json={"name": "Grade 10B"}, headers=auth(SECRETARY)).json()["id"]
    student_id = client.post("/students", json={"full_name": "Ada Obi", "class_id": c1}, headers=auth(SECRETARY)).json()["id"]

    moved = client.put(f"/students/{student_id}/class", json={"class_id": c2}, headers=auth(SECRETARY))
    assert moved.status_code == 200
    assert moved.json()["student"]["class_name"] == "Grade 10B"

    assert client.delete(f"/students/{student_id}/class", headers=auth(SECRETARY)).json()["student"]["class_id"] is None
    assert client.put(f"/students/{student_id}/class", json={"class_id": c1}, headers=auth(TEACHER_1)).status_code == 403


def test_settings_and_feedback(client):
    assert client.put("/settings", json={"default_term": "Term 1"}, headers=auth(ADMIN)).status_code == 200
    assert client.get("/settings", headers=auth(TEACHER_1)).json()["default_term"] == "Term 1"
    assert client.put("/settings", json={"default_term": "Term 2"}, headers=auth(SECRETARY)).status_code == 403

    assert client.post("/feedback", json={"message": "Works well"}, headers=auth(TEACHER_1)).status_code == 201
    assert len(client.get("/feedback", headers=auth(ADMIN)).json()) == 1


def test_schema_lists_every_collection(client):
    schema = client.get("/schema").json()
    assert {"courses", "classes", "classAssignments", "students", "enrollments", "grades"} <= set(schema)
