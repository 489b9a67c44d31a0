# omtii/auth.py

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from omtii.errors import BackendUnavailable, RemoteRejected
from omtii.models import AccountType, Identity, Profile, Role, UserRole

logger = logging.getLogger(__name__)

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALGORITHM = "HS256"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify that a plain password matches the given hashed password.

    Args:
        plain_password (str): The plain text password provided by the user.
        hashed_password (str): The hashed password stored in the database.

    Returns:
        bool: True if the passwords match, False otherwise.
    """
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """
    Hash a plain password using a secure hashing algorithm.

    Args:
        password (str): The plain text password to hash.

    Returns:
        str: The hashed password.
    """
    return pwd_context.hash(password)


def create_access_token(data: dict, secret_key: str, expires_delta: timedelta) -> str:
    """
    Create a JWT access token.

    Args:
        data (dict): The data payload to include in the token.
        secret_key (str): The signing key.
        expires_delta (timedelta): The time delta after which the token expires.

    Returns:
        str: The encoded JWT token as a string.
    """
    to_encode = data.copy()
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    USER_UPDATED = "USER_UPDATED"


@dataclass(frozen=True)
class AuthUser:
    id: int
    email: str
    email_confirmed: bool


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    user: AuthUser
    token_type: str = "bearer"


class AuthSubscription:
    def __init__(self, listeners: list, handler):
        self._listeners = listeners
        self.handler = handler

    def unsubscribe(self) -> None:
        if self.handler in self._listeners:
            self._listeners.remove(self.handler)


class LocalAuth:
    """
    Password authentication for one client process.

    Session-change listeners are called inline from inside sign-in and
    sign-out, the way hosted auth SDKs deliver them; listeners that need
    more backend calls have to schedule them.
    """

    def __init__(
        self,
        engine,
        secret_key: str,
        access_token_expire_minutes: int = 60,
        require_email_confirmation: bool = False,
    ):
        self.engine = engine
        self.secret_key = secret_key
        self.expires_delta = timedelta(minutes=access_token_expire_minutes)
        self.require_email_confirmation = require_email_confirmation
        self._session: AuthSession | None = None
        self._listeners: list[Callable] = []

    def on_auth_state_change(self, handler: Callable[[AuthEvent, AuthSession | None], None]) -> AuthSubscription:
        self._listeners.append(handler)
        return AuthSubscription(self._listeners, handler)

    def _notify(self, event: AuthEvent, session: AuthSession | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception as e:
                logger.error(f"Auth listener failed on {event.value}: {e}")

    def _issue_session(self, identity: Identity) -> AuthSession:
        token = create_access_token(
            {"sub": str(identity.id), "email": identity.email},
            self.secret_key,
            self.expires_delta,
        )
        user = AuthUser(id=identity.id, email=identity.email, email_confirmed=identity.email_confirmed)
        return AuthSession(access_token=token, user=user)

    async def sign_up(self, email: str, password: str, metadata: dict | None = None) -> AuthSession | None:
        """
        Register a new identity together with its profile and first role.

        Returns the new session, or None while the email still awaits
        confirmation.
        """
        metadata = metadata or {}
        account_type = metadata.get("account_type")
        role = Role.VENDOR if account_type == AccountType.VENDOR.value else Role.BUYER
        try:
            with Session(self.engine) as session:
                existing = session.exec(select(Identity).where(Identity.email == email)).first()
                if existing:
                    raise RemoteRejected("User already registered", code="already_registered")

                identity = Identity(
                    email=email,
                    hashed_password=get_password_hash(password),
                    email_confirmed=not self.require_email_confirmation,
                )
                session.add(identity)
                session.flush()
                session.add(Profile(
                    id=identity.id,
                    full_name=metadata.get("full_name"),
                    email=email,
                    account_type=account_type or AccountType.BUYER.value,
                ))
                session.add(UserRole(user_id=identity.id, role=role))
                session.commit()
                session.refresh(identity)
        except IntegrityError as e:
            raise RemoteRejected(str(e.orig), code="constraint")
        except OperationalError as e:
            raise BackendUnavailable(str(e.orig))

        logger.info(f"Identity ID {identity.id} registered as {role.value}.")
        if not identity.email_confirmed:
            return None
        return self._start_session(identity)

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        try:
            with Session(self.engine) as session:
                identity = session.exec(select(Identity).where(Identity.email == email)).first()
        except OperationalError as e:
            raise BackendUnavailable(str(e.orig))

        if identity is None or not verify_password(password, identity.hashed_password):
            raise RemoteRejected("Invalid login credentials", code="invalid_credentials")
        if not identity.email_confirmed:
            raise RemoteRejected("Email not confirmed", code="email_not_confirmed")
        logger.info(f"Identity ID {identity.id} signed in.")
        return self._start_session(identity)

    def _start_session(self, identity: Identity) -> AuthSession:
        self._session = self._issue_session(identity)
        self._notify(AuthEvent.SIGNED_IN, self._session)
        return self._session

    async def sign_out(self) -> None:
        if self._session is not None:
            logger.info(f"Identity ID {self._session.user.id} signed out.")
        self._session = None
        self._notify(AuthEvent.SIGNED_OUT, None)

    async def get_session(self) -> AuthSession | None:
        """The current session, or None when absent or expired."""
        if self._session is None:
            return None
        try:
            jwt.decode(self._session.access_token, self.secret_key, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            logger.info("Access token expired, dropping session.")
            self._session = None
            self._notify(AuthEvent.SIGNED_OUT, None)
            return None
        except JWTError:
            self._session = None
            return None
        return self._session

    async def confirm_email(self, email: str) -> None:
        with Session(self.engine) as session:
            identity = session.exec(select(Identity).where(Identity.email == email)).first()
            if identity is None:
                raise RemoteRejected("User not found", code="not_found")
            identity.email_confirmed = True
            session.add(identity)
            session.commit()
