"""CredentialStore conflict mapping."""

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leornian.auth.store import CredentialStore, _is_username_conflict
from leornian.errors import UserAlreadyExists, UsernameAlreadyExists


class _DriverError(Exception):
    """Stands in for a driver exception that names the violated constraint."""

    def __init__(self, message: str, constraint_name: str | None) -> None:
        super().__init__(message)
        self.constraint_name = constraint_name


def _integrity_error(orig: Exception) -> IntegrityError:
    return IntegrityError("INSERT INTO users ...", {}, orig)


class TestConstraintDetection:
    def test_username_constraint_by_name(self) -> None:
        orig = _DriverError('duplicate key value violates unique constraint "uq_users_username"', "uq_users_username")
        assert _is_username_conflict(_integrity_error(orig)) is True

    def test_email_constraint_mentioning_username_in_value(self) -> None:
        orig = _DriverError(
            'duplicate key value violates unique constraint "uq_users_email" '
            "DETAIL: Key (email)=(username@example.com) already exists.",
            "uq_users_email",
        )
        assert _is_username_conflict(_integrity_error(orig)) is False

    def test_wrapped_driver_error(self) -> None:
        adapted = Exception("adapted driver error")
        adapted.__cause__ = _DriverError("unique violation", "uq_users_username")
        assert _is_username_conflict(_integrity_error(adapted)) is True

    def test_sqlite_column_message(self) -> None:
        sqlite_error = Exception("UNIQUE constraint failed: users.username")
        assert _is_username_conflict(_integrity_error(sqlite_error)) is True
        sqlite_error = Exception("UNIQUE constraint failed: users.email")
        assert _is_username_conflict(_integrity_error(sqlite_error)) is False


class TestCreateUserConflicts:
    async def test_duplicate_username_row(self, db_session: AsyncSession) -> None:
        store = CredentialStore(db_session)
        await store.create_user(username="dup", email="one@example.com", name="One", password_hash=None)
        with pytest.raises(UsernameAlreadyExists):
            await store.create_user(username="dup", email="two@example.com", name="Two", password_hash=None)

    async def test_duplicate_email_row(self, db_session: AsyncSession) -> None:
        store = CredentialStore(db_session)
        await store.create_user(username="first", email="same@example.com", name="One", password_hash=None)
        with pytest.raises(UserAlreadyExists):
            await store.create_user(username="second", email="same@example.com", name="Two", password_hash=None)
