"""
Users Module

Identity for clients, advisors and directors: registration with email
verification, password hashing, JWT access tokens and the director-side
user administration.
"""

import hashlib
import hmac
import logging
import re
import secrets
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import jwt

from .audit import AuditTrail, AuditEventType
from .config import AvenirConfig, get_config
from .errors import (
    ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("avenir.users")

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
MAX_EMAIL_LENGTH = 255


class Email:
    """Validated, normalised email address"""

    __slots__ = ('value',)

    def __init__(self, value: str):
        if not value or not EMAIL_PATTERN.match(value.strip()):
            raise ValidationError("Invalid email format")
        self.value = value.strip().lower()

    @staticmethod
    def is_valid(value: str) -> bool:
        return bool(value) and bool(EMAIL_PATTERN.match(value.strip()))

    @property
    def domain(self) -> str:
        return self.value.split('@', 1)[1]

    @property
    def local_part(self) -> str:
        return self.value.split('@', 1)[0]

    def __eq__(self, other) -> bool:
        return isinstance(other, Email) and self.value == other.value

    def __hash__(self) -> int:
        return hash(self.value)

    def __str__(self) -> str:
        return self.value


class UserRole(Enum):
    """Roles of the bank's users"""
    CLIENT = "CLIENT"
    ADVISOR = "ADVISOR"
    DIRECTOR = "DIRECTOR"


@dataclass
class User(StorageRecord):
    """Bank user with credentials and verification state"""
    email: str
    first_name: str
    last_name: str
    password_hash: str
    password_salt: str
    role: UserRole = UserRole.CLIENT
    is_email_confirmed: bool = False
    email_confirmation_token: Optional[str] = None
    email_confirmation_token_expiry: Optional[datetime] = None
    is_banned: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def confirm_email(self) -> None:
        if self.is_email_confirmed:
            raise ConflictError("Email already confirmed")
        self.is_email_confirmed = True
        self.email_confirmation_token = None
        self.email_confirmation_token_expiry = None
        self.touch()

    def confirm_email_with_token(self, token: str, now: Optional[datetime] = None) -> None:
        """Confirm the email if the token matches and has not expired"""
        now = now or datetime.now(timezone.utc)
        if not self.email_confirmation_token or not hmac.compare_digest(
                self.email_confirmation_token, token):
            raise ValidationError("Invalid verification token")
        if self.email_confirmation_token_expiry and self.email_confirmation_token_expiry < now:
            raise ValidationError("Verification token has expired")
        self.confirm_email()

    def generate_email_confirmation_token(self, token_factory: Callable[[], str],
                                          ttl: timedelta) -> str:
        if self.is_email_confirmed:
            raise ConflictError("Email already confirmed")
        self.email_confirmation_token = token_factory()
        self.email_confirmation_token_expiry = datetime.now(timezone.utc) + ttl
        self.touch()
        return self.email_confirmation_token

    def ban(self) -> None:
        if self.is_banned:
            raise ConflictError("User already banned")
        self.is_banned = True
        self.touch()

    def unban(self) -> None:
        if not self.is_banned:
            raise ConflictError("User is not banned")
        self.is_banned = False
        self.touch()

    def can_perform_action(self) -> bool:
        """Check if user can act (not banned, email confirmed)"""
        return not self.is_banned and self.is_email_confirmed

    def is_client(self) -> bool:
        return self.role == UserRole.CLIENT

    def is_advisor(self) -> bool:
        return self.role == UserRole.ADVISOR

    def is_director(self) -> bool:
        return self.role == UserRole.DIRECTOR

    def to_public_dict(self) -> Dict[str, Any]:
        """User fields without credentials or tokens"""
        data = self.to_dict()
        for key in ('password_hash', 'password_salt', 'email_confirmation_token',
                    'email_confirmation_token_expiry'):
            data.pop(key, None)
        return data


def generate_salt() -> str:
    """Generate random salt for password hashing"""
    return secrets.token_hex(16)


def hash_password(password: str, salt: str) -> str:
    """Hash password with salt using scrypt"""
    return hashlib.scrypt(
        password.encode(),
        salt=salt.encode(),
        n=16384, r=8, p=1
    ).hex()


def verify_password(password: str, salt: str, password_hash: str) -> bool:
    return hmac.compare_digest(hash_password(password, salt), password_hash)


def new_verification_token() -> str:
    return secrets.token_bytes(32).hex()


class TokenService:
    """Issues and decodes JWT access tokens"""

    def __init__(self, secret: str, algorithm: str = "HS256", expiry_hours: int = 24):
        self.secret = secret
        self.algorithm = algorithm
        self.expiry_hours = expiry_hours

    def issue(self, user: User) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user.id,
            "role": user.role.value,
            "iat": now,
            "exp": now + timedelta(hours=self.expiry_hours),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise UnauthorizedError("Token expired")
        except jwt.InvalidTokenError:
            raise UnauthorizedError("Invalid token")


class EmailSender(ABC):
    """Outbound email channel for verification mails"""

    @abstractmethod
    def send_verification_email(self, email: str, token: str, full_name: str) -> None:
        pass


class LoggingEmailSender(EmailSender):
    """Writes the verification link to the log instead of sending mail"""

    def __init__(self, frontend_url: str):
        self.frontend_url = frontend_url.rstrip('/')
        self.sent: List[Dict[str, str]] = []

    def verification_link(self, token: str) -> str:
        return f"{self.frontend_url}/verify-email/{token}"

    def send_verification_email(self, email: str, token: str, full_name: str) -> None:
        link = self.verification_link(token)
        self.sent.append({'email': email, 'token': token, 'link': link})
        log_action(logger, "info", f"Verification email for {full_name}",
                   action="send_verification_email", resource=email,
                   extra={'link': link})


class UserManager(EventPublisherMixin):
    """Registration, authentication and user administration"""

    TABLE = "users"
    ACCOUNTS_TABLE = "accounts"

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 token_service: Optional[TokenService] = None,
                 email_sender: Optional[EmailSender] = None,
                 config: Optional[AvenirConfig] = None,
                 event_dispatcher: Optional[EventDispatcher] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.token_service = token_service or TokenService(
            self.config.jwt_secret, self.config.jwt_algorithm, self.config.jwt_expiry_hours
        )
        self.email_sender = email_sender or LoggingEmailSender(self.config.frontend_url)
        self.event_dispatcher = event_dispatcher

    # Persistence helpers

    def save_user(self, user: User) -> None:
        self.storage.save(self.TABLE, user.id, user.to_dict())

    def get_user(self, user_id: str) -> Optional[User]:
        data = self.storage.load(self.TABLE, user_id)
        if not data:
            return None
        return User.from_dict(data)

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        matches = self.storage.find(self.TABLE, {'email': email.strip().lower()})
        if not matches:
            return None
        return User.from_dict(matches[0])

    def email_exists(self, email: str) -> bool:
        return self.get_user_by_email(email) is not None

    def _all_users(self) -> List[User]:
        users = [User.from_dict(data) for data in self.storage.load_all(self.TABLE)]
        users.sort(key=lambda u: u.created_at)
        return users

    # Validation

    def _validate_registration(self, first_name: str, last_name: str,
                               email: str, password: str) -> None:
        if not email or not password or not first_name or not last_name:
            raise ValidationError("All fields are required")

        if len(email) > MAX_EMAIL_LENGTH:
            raise ValidationError("Email is too long")

        self._validate_password(password)

        if not 2 <= len(first_name.strip()) <= 100:
            raise ValidationError("First name must be between 2 and 100 characters")
        if not 2 <= len(last_name.strip()) <= 100:
            raise ValidationError("Last name must be between 2 and 100 characters")

    def _validate_password(self, password: str) -> None:
        if len(password) < self.config.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.config.password_min_length} characters"
            )
        if len(password) > self.config.password_max_length:
            raise ValidationError(
                f"Password must be at most {self.config.password_max_length} characters"
            )

    def _new_user(self, first_name: str, last_name: str, email: Email,
                  password: str, role: UserRole) -> User:
        now = datetime.now(timezone.utc)
        salt = generate_salt()
        return User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            email=email.value,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            password_hash=hash_password(password, salt),
            password_salt=salt,
            role=role
        )

    # Registration and verification

    def register(self, first_name: str, last_name: str, email: str, password: str) -> User:
        """
        Register a new client

        New users are always clients and start unconfirmed; a verification
        token is generated and handed to the email sender.

        Raises:
            ValidationError: invalid or missing input
            ConflictError: email already registered
        """
        self._validate_registration(first_name, last_name, email, password)
        address = Email(email)

        with self.storage.atomic():
            if self.email_exists(address.value):
                raise ValidationError("User with this email already exists")

            user = self._new_user(first_name, last_name, address, password, UserRole.CLIENT)
            token = user.generate_email_confirmation_token(
                new_verification_token,
                timedelta(hours=self.config.verification_token_ttl_hours)
            )
            self.save_user(user)

            self.audit_trail.log_event(
                AuditEventType.USER_REGISTERED,
                'user',
                user.id,
                {'email': user.email, 'role': user.role.value},
                user.id
            )

        self.email_sender.send_verification_email(user.email, token, user.full_name)
        self.publish_event(DomainEvent.USER_REGISTERED, 'user', user.id, {'email': user.email})
        log_action(logger, "info", "User registered", user_id=user.id,
                   action="register", resource="user")
        return user

    def generate_verification_token(self, user_id: str) -> str:
        """Issue a fresh verification token and send the verification email"""
        with self.storage.atomic():
            user = self.require_user(user_id)
            token = user.generate_email_confirmation_token(
                new_verification_token,
                timedelta(hours=self.config.verification_token_ttl_hours)
            )
            self.save_user(user)
            self.audit_trail.log_event(
                AuditEventType.VERIFICATION_TOKEN_ISSUED, 'user', user.id, {}, user.id
            )

        self.email_sender.send_verification_email(user.email, token, user.full_name)
        return token

    def resend_verification(self, email: str) -> str:
        user = self.get_user_by_email(email or '')
        if not user:
            raise NotFoundError("User not found")
        return self.generate_verification_token(user.id)

    def confirm_email(self, token: str) -> User:
        if not token:
            raise ValidationError("Invalid verification token")

        with self.storage.atomic():
            matches = self.storage.find(self.TABLE, {'email_confirmation_token': token})
            if not matches:
                raise ValidationError("Invalid verification token")

            user = User.from_dict(matches[0])
            user.confirm_email_with_token(token)
            self.save_user(user)
            self.audit_trail.log_event(AuditEventType.EMAIL_CONFIRMED, 'user', user.id, {}, user.id)

        return user

    # Authentication

    def login(self, email: str, password: str) -> Tuple[User, str]:
        """
        Authenticate by email and password

        Returns:
            (user, access token)
        """
        if not email or not password:
            raise ValidationError("Email and password are required")

        user = self.get_user_by_email(email)
        if not user or not verify_password(password, user.password_salt, user.password_hash):
            self.audit_trail.log_event(
                AuditEventType.LOGIN_FAILED, 'user', user.id if user else email.strip().lower(),
                {'reason': 'invalid_credentials'}
            )
            raise UnauthorizedError("Invalid email or password")

        if not user.is_email_confirmed:
            raise UnauthorizedError("Please verify your email before logging in")

        if user.is_banned:
            raise ForbiddenError("User is banned")

        self.audit_trail.log_event(AuditEventType.LOGIN_SUCCESS, 'user', user.id, {}, user.id)
        return user, self.token_service.issue(user)

    def get_current_user(self, token: str) -> User:
        payload = self.token_service.decode(token)
        user = self.get_user(payload.get('sub', ''))
        if not user:
            raise UnauthorizedError("User not found")
        if user.is_banned:
            raise ForbiddenError("User is banned")
        return user

    # Administration

    def create_user(self, first_name: str, last_name: str, email: str, password: str,
                    role: UserRole, created_by: Optional[str] = None) -> User:
        """Create an already confirmed user with the given role"""
        self._validate_registration(first_name, last_name, email, password)
        address = Email(email)

        with self.storage.atomic():
            if self.email_exists(address.value):
                raise ValidationError("User with this email already exists")

            user = self._new_user(first_name, last_name, address, password, role)
            user.is_email_confirmed = True
            self.save_user(user)

            self.audit_trail.log_event(
                AuditEventType.USER_CREATED,
                'user',
                user.id,
                {'email': user.email, 'role': role.value},
                created_by
            )

        return user

    def create_client(self, first_name: str, last_name: str, email: str, password: str,
                      created_by: Optional[str] = None) -> User:
        return self.create_user(first_name, last_name, email, password,
                                UserRole.CLIENT, created_by)

    def _require_client(self, client_id: str) -> User:
        user = self.get_user(client_id)
        if not user or not user.is_client():
            raise NotFoundError("Client introuvable")
        return user

    def update_client(self, client_id: str, email: Optional[str] = None,
                      first_name: Optional[str] = None, last_name: Optional[str] = None,
                      password: Optional[str] = None,
                      acting_user_id: Optional[str] = None) -> User:
        """
        Change a client's email, names or password

        Fields left as None keep their value. A new password is re-hashed
        with a fresh salt.

        Raises:
            NotFoundError: unknown id, or the user is not a client
            ConflictError: another user already has the email
            ValidationError: a field fails the registration rules
        """
        with self.storage.atomic():
            user = self._require_client(client_id)
            changed = []

            if email is not None:
                if len(email) > MAX_EMAIL_LENGTH:
                    raise ValidationError("Email is too long")
                address = Email(email)
                if address.value != user.email:
                    if self.email_exists(address.value):
                        raise ConflictError("Un utilisateur avec cet email existe déjà")
                    user.email = address.value
                    changed.append('email')

            for field, value in (('first_name', first_name), ('last_name', last_name)):
                if value is None:
                    continue
                if not 2 <= len(value.strip()) <= 100:
                    label = "First name" if field == 'first_name' else "Last name"
                    raise ValidationError(f"{label} must be between 2 and 100 characters")
                setattr(user, field, value.strip())
                changed.append(field)

            if password is not None:
                self._validate_password(password)
                user.password_salt = generate_salt()
                user.password_hash = hash_password(password, user.password_salt)
                changed.append('password')

            user.touch()
            self.save_user(user)
            self.audit_trail.log_event(
                AuditEventType.USER_UPDATED, 'user', user.id,
                {'fields': changed}, acting_user_id
            )

        log_action(logger, "info", "Client updated", user_id=acting_user_id,
                   action="update_client", resource=f"user:{user.id}",
                   extra={'fields': changed})
        return user

    def delete_client(self, client_id: str, acting_user_id: Optional[str] = None) -> None:
        """
        Remove a client that owns no accounts

        Raises:
            NotFoundError: unknown id, or the user is not a client
            ConflictError: the client still owns accounts
        """
        with self.storage.atomic():
            user = self._require_client(client_id)
            if self.storage.find(self.ACCOUNTS_TABLE, {'user_id': user.id}):
                raise ConflictError("Impossible de supprimer un client qui possède des comptes")

            self.storage.delete(self.TABLE, user.id)
            self.audit_trail.log_event(
                AuditEventType.USER_DELETED, 'user', user.id,
                {'email': user.email}, acting_user_id
            )

        log_action(logger, "info", "Client deleted", user_id=acting_user_id,
                   action="delete_client", resource=f"user:{user.id}")

    def _set_banned(self, user_id: str, banned: bool, acting_user_id: Optional[str]) -> User:
        with self.storage.atomic():
            user = self.require_user(user_id)
            if banned:
                user.ban()
            else:
                user.unban()
            self.save_user(user)
            self.audit_trail.log_event(
                AuditEventType.USER_BANNED if banned else AuditEventType.USER_UNBANNED,
                'user', user.id, {}, acting_user_id
            )
        return user

    def ban_user(self, user_id: str, acting_user_id: Optional[str] = None) -> User:
        return self._set_banned(user_id, True, acting_user_id)

    def unban_user(self, user_id: str, acting_user_id: Optional[str] = None) -> User:
        return self._set_banned(user_id, False, acting_user_id)

    def list_users(self, role: Optional[UserRole] = None, skip: int = 0,
                   take: int = 10) -> Tuple[List[User], int]:
        """Page of users, newest first, with the total count"""
        users = self._all_users()
        if role:
            users = [u for u in users if u.role == role]
        users.reverse()
        return users[skip:skip + take], len(users)

    def search_users_by_email(self, fragment: str, role: Optional[UserRole] = None,
                              exclude_user_id: Optional[str] = None) -> List[User]:
        """Up to 10 non-banned users whose email contains the fragment"""
        fragment = (fragment or '').strip().lower()
        if len(fragment) < 2:
            return []

        results = []
        for user in self._all_users():
            if user.is_banned or user.id == exclude_user_id:
                continue
            if role and user.role != role:
                continue
            if fragment in user.email:
                results.append(user)
                if len(results) == 10:
                    break
        return results

    def find_clients_by_name(self, full_name: str) -> List[User]:
        """Clients whose "first last" name matches, case-insensitively"""
        parts = (full_name or '').split()
        if len(parts) < 2:
            return []
        first_name = parts[0].lower()
        last_name = ' '.join(parts[1:]).lower()

        return [
            u for u in self._all_users()
            if u.is_client()
            and u.first_name.lower() == first_name
            and u.last_name.lower() == last_name
        ]
