"""
auth/provisioning.py -- Account Provisioner for first-time directory logins.

A directory identity with no local row gets one: role User, status Active,
the "Hold" department, and a random password hash nobody knows (the column is
NOT NULL, but the account only ever authenticates through the directory).
Nothing from the directory can raise the role or pick another department;
an administrator moves the user later.

Both get-or-create steps treat the insert as the atomic check: the
functional unique indexes in auth/store.py reject a duplicate, and a
concurrent first login that loses the race gets IntegrityError and re-reads
the winner's row. Two near-simultaneous logins for a new identity still
yield one user.
"""

from __future__ import annotations

import logging
import secrets

from sqlalchemy.exc import IntegrityError

from auth.errors import ProvisioningConflict
from auth.models import Department, DirectoryUser, Role, User, UserStatus
from auth.passwords import hash_password
from auth.store import UserStore

logger = logging.getLogger("projectpulse.auth.provisioning")

_HOLD_DESCRIPTION = "Temporary department for new directory users"


class AccountProvisioner:
    def __init__(self, store: UserStore, hold_department_name: str = "Hold", preferred_language: str = "ar") -> None:
        self.store = store
        self.hold_department_name = hold_department_name
        self.preferred_language = preferred_language

    def ensure_hold_department(self) -> int:
        """Return the Hold department id, creating the department on first need."""
        existing = self.store.get_department_by_name(self.hold_department_name)
        if existing is not None:
            return existing.id
        try:
            department_id = self.store.create_department(
                Department(name=self.hold_department_name, description=_HOLD_DESCRIPTION)
            )
        except IntegrityError as exc:
            winner = self.store.get_department_by_name(self.hold_department_name)
            if winner is None:
                raise ProvisioningConflict(f"department {self.hold_department_name!r} could not be re-read") from exc
            logger.info("Hold department created concurrently; using id=%s", winner.id)
            return winner.id
        logger.info("Created %r department (id=%s)", self.hold_department_name, department_id)
        return department_id

    def provision_from_directory(self, directory_user: DirectoryUser) -> User:
        """Create (or, after a lost race, fetch) the local user for a directory identity."""
        department_id = self.ensure_hold_department()
        candidate = User(
            username=directory_user.username,
            email=directory_user.email,
            name=directory_user.display_name,
            password=hash_password(secrets.token_hex(16)),
            role=Role.USER,
            status=UserStatus.ACTIVE,
            department_id=department_id,
            preferred_language=self.preferred_language,
            is_active=True,
        )
        try:
            user_id = self.store.create_user(candidate)
        except IntegrityError as exc:
            winner = self.store.get_by_username(directory_user.username)
            if winner is None:
                raise ProvisioningConflict(f"user {directory_user.username!r} could not be re-read") from exc
            logger.info("User %r provisioned concurrently; reusing id=%s", directory_user.username, winner.id)
            return winner

        created = self.store.get_by_id(user_id)
        if created is None:
            raise ProvisioningConflict(f"user id={user_id} vanished after insert")
        logger.info(
            "Provisioned directory user %r (id=%s) into %r",
            created.username,
            created.id,
            self.hold_department_name,
        )
        return created
