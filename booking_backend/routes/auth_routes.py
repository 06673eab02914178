import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking_backend.auth import jwt_handler, passwords
from booking_backend.auth.dependencies import get_current_user
from booking_backend.core.errors import DuplicateEmail, StorageFailure, Unauthorized
from booking_backend.database import get_db
from booking_backend.models.user import PATIENT_ROLE, User

router = APIRouter(tags=['auth'])

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 120
# bcrypt only looks at the first 72 bytes.
MAX_PASSWORD_BYTES = 72


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if not normalized or '@' not in normalized:
        raise ValueError('A valid email is required.')
    return normalized


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Name is required.')
        if len(normalized) > MAX_NAME_LENGTH:
            raise ValueError(f'Name must be {MAX_NAME_LENGTH} characters or fewer.')
        return normalized

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator('password')
    @classmethod
    def validate_password(cls, value: str) -> str:
        if len(value) < passwords.MIN_PASSWORD_LENGTH:
            raise ValueError(f'Password must be at least {passwords.MIN_PASSWORD_LENGTH} characters.')
        if len(value.encode('utf-8')) > MAX_PASSWORD_BYTES:
            raise ValueError(f'Password must be at most {MAX_PASSWORD_BYTES} bytes.')
        return value


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    role: str

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    token: str
    token_type: str = 'bearer'
    user: UserResponse


def issue_token(user: User) -> TokenResponse:
    token = jwt_handler.create_access_token(subject=user.email, role=user.role)
    return TokenResponse(token=token, user=UserResponse.model_validate(user))


@router.post('/register', response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(data: RegisterRequest, db: Session = Depends(get_db)):
    if db.query(User).filter(User.email == data.email).first():
        raise DuplicateEmail()

    user = User(
        name=data.name,
        email=data.email,
        hashed_password=passwords.hash_password(data.password),
        role=PATIENT_ROLE,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateEmail() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to register %s', data.email)
        raise StorageFailure('Registration failed. Please try again.') from exc

    db.refresh(user)
    logger.info('Registered user %s', user.id)
    return issue_token(user)


@router.post('/login', response_model=TokenResponse)
def login(data: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == data.email).first()
    if user is None or not passwords.verify_password(data.password, user.hashed_password):
        raise Unauthorized('Invalid email or password.')

    return issue_token(user)


@router.get('/me', response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)):
    return current_user
