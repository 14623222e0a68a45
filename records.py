"""
Supporting records: academic terms, teacher groups, feedback and the
system settings document. Admin-owned except feedback, which any user with
a role may submit.
"""

import logging
from typing import Any, Dict, List, Optional

from authorization import Caller, Operation, require
from database import DocumentStore
from errors import ValidationError
from repository import Repository, run_atomic
from schemas import (
    ACADEMIC_TERMS,
    FEEDBACKS,
    SETTINGS_DOC_ID,
    SYSTEM_SETTINGS,
    TEACHER_GROUPS,
    USERS,
    AcademicTerm,
    Feedback,
    SystemSettings,
    TeacherGroup,
)

logger = logging.getLogger(__name__)


class RecordsService:
    def __init__(self, store: DocumentStore, retries: int = 3, backoff: float = 0.05):
        self.store = store
        self.retries = retries
        self.backoff = backoff

    def _atomic(self, fn):
        return run_atomic(self.store, fn, retries=self.retries, backoff=self.backoff)

    # ------------------- ACADEMIC TERMS -------------------

    @staticmethod
    def _clear_other_current_terms(repo: Repository, keep_id: str):
        for term in repo.list(ACADEMIC_TERMS, {"is_current": True}):
            if term.id != keep_id:
                repo.update(ACADEMIC_TERMS, term.id, {"is_current": False})

    def create_term(self, caller: Caller, data: Dict[str, Any]) -> AcademicTerm:
        require(caller, Operation.WRITE_TERM)

        def op(repo: Repository) -> AcademicTerm:
            term = repo.create(ACADEMIC_TERMS, {**data, "created_by": caller.uid})
            if term.is_current:
                self._clear_other_current_terms(repo, term.id)
            return term

        return self._atomic(op)

    def update_term(self, caller: Caller, term_id: str, patch: Dict[str, Any]) -> AcademicTerm:
        require(caller, Operation.WRITE_TERM)

        def op(repo: Repository) -> AcademicTerm:
            term = repo.update(ACADEMIC_TERMS, term_id, patch)
            if term.is_current:
                self._clear_other_current_terms(repo, term.id)
            return term

        return self._atomic(op)

    def list_terms(self, caller: Caller) -> List[AcademicTerm]:
        require(caller, Operation.READ_TERM)
        terms = Repository(self.store).list(ACADEMIC_TERMS)
        terms.sort(key=lambda t: t.start_date, reverse=True)
        return terms

    def delete_term(self, caller: Caller, term_id: str):
        require(caller, Operation.WRITE_TERM)
        Repository(self.store).delete(ACADEMIC_TERMS, term_id)

    # ------------------- TEACHER GROUPS -------------------

    @staticmethod
    def _sync_members(repo: Repository, group_id: str, old: List[str], new: List[str]):
        for uid in new:
            profile = repo.get(USERS, uid)
            if profile.role != "Teacher":
                raise ValidationError(f"User '{uid}' is not a teacher")
            if profile.teacher_group_id != group_id:
                repo.update(USERS, uid, {"teacher_group_id": group_id})
        for uid in set(old) - set(new):
            profile = repo.find(USERS, uid)
            if profile is not None and profile.teacher_group_id == group_id:
                repo.update(USERS, uid, {"teacher_group_id": None})

    def save_teacher_group(self, caller: Caller, data: Dict[str, Any], group_id: Optional[str] = None) -> TeacherGroup:
        """Create a group, or update it when group_id is given; member profiles follow."""
        require(caller, Operation.WRITE_TEACHER_GROUP)
        members = list(dict.fromkeys(data.get("member_teacher_ids") or []))
        payload = {**data, "member_teacher_ids": members}

        def op(repo: Repository) -> TeacherGroup:
            if group_id:
                old = repo.get(TEACHER_GROUPS, group_id).member_teacher_ids
                group = repo.update(TEACHER_GROUPS, group_id, payload)
            else:
                old = []
                group = repo.create(TEACHER_GROUPS, {**payload, "created_by": caller.uid})
            self._sync_members(repo, group.id, old, members)
            return group

        return self._atomic(op)

    def list_teacher_groups(self, caller: Caller) -> List[TeacherGroup]:
        require(caller, Operation.READ_TEACHER_GROUP)
        return Repository(self.store).list(TEACHER_GROUPS)

    def delete_teacher_group(self, caller: Caller, group_id: str):
        require(caller, Operation.WRITE_TEACHER_GROUP)

        def op(repo: Repository):
            group = repo.get(TEACHER_GROUPS, group_id)
            self._sync_members(repo, group_id, group.member_teacher_ids, [])
            repo.delete(TEACHER_GROUPS, group_id)

        self._atomic(op)

    # ------------------- FEEDBACK -------------------

    def submit_feedback(self, caller: Caller, message: str, name: Optional[str] = None) -> Feedback:
        require(caller, Operation.WRITE_FEEDBACK)
        data = {"message": message, "user_id": caller.uid, "user_email": caller.email}
        if name and name.strip():
            data["name"] = name.strip()
        return Repository(self.store).create(FEEDBACKS, data)

    def list_feedback(self, caller: Caller) -> List[Feedback]:
        require(caller, Operation.READ_FEEDBACK)
        feedback = Repository(self.store).list(FEEDBACKS)
        feedback.reverse()
        return feedback

    # ------------------- SYSTEM SETTINGS -------------------

    def get_settings(self, caller: Caller) -> SystemSettings:
        require(caller, Operation.READ_SETTINGS)
        settings = Repository(self.store).find(SYSTEM_SETTINGS, SETTINGS_DOC_ID)
        return settings or SystemSettings(id=SETTINGS_DOC_ID)

    def update_settings(self, caller: Caller, patch: Dict[str, Any]) -> SystemSettings:
        require(caller, Operation.WRITE_SETTINGS)

        def op(repo: Repository) -> SystemSettings:
            current = repo.find(SYSTEM_SETTINGS, SETTINGS_DOC_ID)
            base = current.model_dump(exclude={"id", "created_at", "updated_at"}) if current else {}
            return repo.replace(SYSTEM_SETTINGS, SETTINGS_DOC_ID, {**base, **patch, "updated_by": caller.uid})

        settings = self._atomic(op)
        logger.info("System settings updated by %s", caller.uid)
        return settings
