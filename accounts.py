"""
User profiles and role administration.

The identity provider only tells us who is calling ({uid, email}). The role
lives on the UserProfile document. A profile created on first login has no
role until an Admin assigns one, and the gate denies everything to it.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from authorization import Caller, Operation, require
from database import DocumentStore
from errors import ValidationError
from repository import Repository, run_atomic
from schemas import ROLES, SCHOOLS, USERS, School, UserProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    uid: str
    email: Optional[str] = None


class AccountService:
    def __init__(self, store: DocumentStore, retries: int = 3, backoff: float = 0.05):
        self.store = store
        self.retries = retries
        self.backoff = backoff

    def ensure_profile(self, identity: Identity) -> UserProfile:
        profile, created = Repository(self.store).create_if_absent(USERS, identity.uid, {"email": identity.email})
        if created:
            logger.info("Created pending profile for %s", identity.uid)
        return profile

    def caller_for(self, identity: Optional[Identity]) -> Optional[Caller]:
        if identity is None or not identity.uid:
            return None
        profile = Repository(self.store).find(USERS, identity.uid)
        if profile is None:
            return Caller(uid=identity.uid, role=None, email=identity.email)
        return Caller(uid=profile.id, role=profile.role, email=profile.email or identity.email)

    def list_profiles(self, caller: Caller, role: Optional[str] = None) -> List[UserProfile]:
        require(caller, Operation.READ_USERS)
        filter_q = {"role": role} if role else {}
        return Repository(self.store).list(USERS, filter_q)

    def set_role(self, caller: Caller, uid: str, role: Optional[str]) -> UserProfile:
        require(caller, Operation.MANAGE_USERS)
        if role is not None and role not in ROLES:
            raise ValidationError(f"Unknown role '{role}'. Use one of: {', '.join(ROLES)}")

        def op(repo: Repository) -> UserProfile:
            profile = repo.get(USERS, uid)
            if profile.role == "Admin" and role != "Admin" and len(repo.list(USERS, {"role": "Admin"})) <= 1:
                raise ValidationError("Cannot remove the last Admin")
            return repo.update(USERS, uid, {"role": role})

        profile = run_atomic(self.store, op, retries=self.retries, backoff=self.backoff)
        logger.info("Role of %s set to %s by %s", uid, role, caller.uid)
        return profile

    def register_school(self, identity: Identity, name: str, school_type: str) -> School:
        """
        Create the school and make the registering user its Admin.
        Only allowed while no Admin exists yet.
        """

        def op(repo: Repository) -> School:
            if repo.list(USERS, {"role": "Admin"}):
                raise ValidationError("A school administrator already exists; ask them to grant you a role")
            school = repo.create(SCHOOLS, {"name": name, "type": school_type, "admin_uids": [identity.uid]})
            profile = repo.find(USERS, identity.uid)
            if profile is None:
                repo.create(USERS, {"email": identity.email, "role": "Admin", "school_id": school.id}, doc_id=identity.uid)
            else:
                repo.update(USERS, identity.uid, {"role": "Admin", "school_id": school.id})
            return school

        school = run_atomic(self.store, op, retries=self.retries, backoff=self.backoff)
        logger.info("Registered school %s with admin %s", school.id, identity.uid)
        return school
