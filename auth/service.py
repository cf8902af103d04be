"""
auth/service.py -- Register / login / OAuth sign-in use cases.

Pattern: Application service (stateless orchestrator). AuthService composes
UserStore, the password hasher and the token issuer. It holds no per-request
state; every piece of state lives in the users table.

Outcomes, not exceptions:
  Expected failures come back as AuthFailure with a code the route layer maps
  to a status: validation_error -> 400, duplicate_email -> 400,
  invalid_credentials -> 401. Infrastructure errors (db.errors) are not
  expected and propagate untouched; the API's exception handler turns them
  into a generic 500.

Enumeration resistance:
  "No such email" and "wrong password" produce the same AuthFailure and both
  pay for one bcrypt verification (auth.passwords.equalize_timing).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from auth.models import (
    AuthErrorCode,
    AuthFailure,
    AuthOutcome,
    AuthSuccess,
    FederatedIdentity,
    NewUser,
    User,
    UserUpdate,
)
from auth.passwords import equalize_timing, verify_password
from auth.store import UserStore
from auth.tokens import create_access_token, verify_access_token
from auth.validation import is_valid_email, normalize_email, validate_login, validate_registration, validate_update
from db.errors import PermanentError

logger = logging.getLogger("authflow.auth.service")

DUPLICATE_EMAIL_MESSAGE = "User with this email already exists."
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password."

_DUPLICATE = AuthFailure(code=AuthErrorCode.duplicate_email, message=DUPLICATE_EMAIL_MESSAGE)
_INVALID_CREDENTIALS = AuthFailure(code=AuthErrorCode.invalid_credentials, message=INVALID_CREDENTIALS_MESSAGE)


def _public(user: User) -> User:
    return replace(user, password=None)


class AuthService:
    """Stateless authentication orchestrator.

    Usage:
        service = AuthService(UserStore(db))
        outcome = service.register("Ann", "Ann@Test.com", "secret1")
        if isinstance(outcome, AuthSuccess):
            outcome.token, outcome.user.id
    """

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def _issue(self, user: User, created: bool = False) -> AuthSuccess:
        token = create_access_token(user.id, user.email)
        return AuthSuccess(user=_public(user), token=token, created=created)

    # ------------------------------------------------------------------
    # Credential flows
    # ------------------------------------------------------------------

    def register(self, name: str | None, email: str | None, password: str | None) -> AuthOutcome:
        """Create an account and sign it in.

        The existence pre-check gives a fast, friendly answer; the unique
        index is what actually guarantees one account per email. A racing
        request that slips past the pre-check surfaces as a unique-violation
        PermanentError and is reported as the same duplicate_email outcome.

        A unique violation on a retried INSERT can be our own row: the first
        attempt committed and then lost its connection. If the stored hash
        matches the submitted password the account is ours and the
        registration succeeded.
        """
        failure = validate_registration(name, email, password)
        if failure is not None:
            return failure

        normalized = normalize_email(email)
        if self.store.find_by_email(normalized) is not None:
            return _DUPLICATE

        try:
            user = self.store.create_user(NewUser(name=name, email=normalized, password=password))
        except PermanentError as exc:
            if not exc.unique_violation:
                raise
            if exc.attempts > 1:
                existing = self.store.find_by_email(normalized)
                if existing is not None and existing.password and verify_password(password, existing.password):
                    logger.warning("Registration for id=%s committed before a retried insert", existing.id)
                    return self._issue(existing, created=True)
            logger.info("Registration lost a race on a duplicate email")
            return _DUPLICATE
        return self._issue(user, created=True)

    def login(self, email: str | None, password: str | None) -> AuthOutcome:
        """Verify credentials and issue a token."""
        failure = validate_login(email, password)
        if failure is not None:
            return failure

        user = self.store.find_by_email(normalize_email(email))
        if user is None or user.password is None:
            # Equalize timing -- do NOT return before running bcrypt.
            equalize_timing(password)
            return _INVALID_CREDENTIALS
        if not verify_password(password, user.password):
            return _INVALID_CREDENTIALS
        return self._issue(user)

    def oauth_sign_in(self, identity: FederatedIdentity) -> AuthOutcome:
        """Find-or-provision the local account for a federated identity.

        Works for any provider adapter that can produce a FederatedIdentity;
        nothing here depends on a provider's callback shape. The sign-in
        succeeds whether the account already existed or was just created.
        """
        if not identity.email or not is_valid_email(identity.email):
            return AuthFailure(
                code=AuthErrorCode.validation_error,
                message="The identity provider did not supply a usable email address.",
                field="email",
            )
        user, created = self.store.find_or_provision(identity.email, identity.name)
        if created:
            logger.info("Provisioned user id=%s from %s sign-in", user.id, identity.provider)
        return self._issue(user, created=created)

    # ------------------------------------------------------------------
    # Session and profile
    # ------------------------------------------------------------------

    def authenticate_token(self, token: str) -> User | None:
        """Resolve a bearer/cookie token to a live user, or None.

        A valid signature is not enough: the user must still exist, so a
        deleted account's tokens stop working even before they expire.
        """
        claims = verify_access_token(token)
        if claims is None:
            return None
        user = self.store.find_by_id(claims.user_id)
        return _public(user) if user is not None else None

    def update_profile(self, user_id: int, changes: UserUpdate) -> AuthOutcome | None:
        """Apply a partial update for user_id.

        Returns None if the user no longer exists. A changed email gets a
        fresh token, since tokens bind the email.
        """
        if changes.is_empty():
            return AuthFailure(code=AuthErrorCode.validation_error, message="No fields to update.")
        failure = validate_update(changes.name, changes.email, changes.password)
        if failure is not None:
            return failure

        if changes.email is not None:
            owner = self.store.find_by_email(changes.email)
            if owner is not None and owner.id != user_id:
                return _DUPLICATE
        try:
            user = self.store.update_user(user_id, changes)
        except PermanentError as exc:
            if exc.unique_violation:
                return _DUPLICATE
            raise
        if user is None:
            return None
        return self._issue(user)

    def delete_account(self, user_id: int) -> bool:
        return self.store.delete_user(user_id)
