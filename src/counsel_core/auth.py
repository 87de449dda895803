from __future__ import annotations

import hashlib
import hmac
import inspect
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from loguru import logger

from counsel_core.errors import AuthError, AuthRequiredError, UniqueViolation
from counsel_core.store.record_store import RecordStore, eq

_PBKDF2_ITERATIONS = 120_000


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: str


SessionCallback = Callable[[AuthUser | None], Awaitable[None] | None]


@runtime_checkable
class AuthService(Protocol):
    def current_user(self) -> AuthUser | None: ...

    async def sign_up(self, email: str, password: str, *, full_name: str | None = None, role: str | None = None) -> AuthUser: ...

    async def sign_in(self, email: str, password: str) -> AuthUser: ...

    async def sign_out(self) -> None: ...

    def on_session_change(self, callback: SessionCallback) -> Callable[[], None]: ...


def hash_password(password: str, *, salt: bytes | None = None) -> str:
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, _PBKDF2_ITERATIONS)
    return f"{salt.hex()}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        salt_hex, _ = stored.split("$", 1)
        expected = hash_password(password, salt=bytes.fromhex(salt_hex))
    except ValueError:
        return False
    return hmac.compare_digest(expected, stored)


def require_user(auth: AuthService) -> AuthUser:
    user = auth.current_user()
    if user is None:
        raise AuthRequiredError()
    return user


class LocalAuthService:
    """Email/password auth over the `profiles` collection."""

    def __init__(self, store: RecordStore):
        self._store = store
        self._user: AuthUser | None = None
        self._callbacks: list[SessionCallback] = []

    def current_user(self) -> AuthUser | None:
        return self._user

    async def sign_up(self, email: str, password: str, *, full_name: str | None = None, role: str | None = None) -> AuthUser:
        normalized = email.strip().lower()
        if "@" not in normalized:
            raise AuthError("A valid email address is required")
        if len(password) < 6:
            raise AuthError("Password must be at least 6 characters")
        try:
            row = await self._store.insert(
                "profiles",
                {
                    "email": normalized,
                    "full_name": full_name,
                    "role": role,
                    "password_hash": hash_password(password),
                },
            )
        except UniqueViolation as ex:
            raise AuthError("An account with this email already exists") from ex
        logger.info(f"Signed up {normalized}")
        user = AuthUser(id=row["id"], email=row["email"])
        await self._set_user(user)
        return user

    async def sign_in(self, email: str, password: str) -> AuthUser:
        rows = await self._store.select("profiles", eq(email=email.strip().lower()), limit=1)
        if not rows or not verify_password(password, rows[0].get("password_hash") or ""):
            raise AuthError("Invalid login credentials")
        user = AuthUser(id=rows[0]["id"], email=rows[0]["email"])
        await self._set_user(user)
        return user

    async def sign_out(self) -> None:
        if self._user is None:
            return
        logger.info(f"Signing out {self._user.email}")
        await self._set_user(None)

    def on_session_change(self, callback: SessionCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def _set_user(self, user: AuthUser | None) -> None:
        self._user = user
        for callback in list(self._callbacks):
            result = callback(user)
            if inspect.isawaitable(result):
                await result
