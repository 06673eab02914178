import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from booking_backend.auth import jwt_handler
from booking_backend.core.errors import Forbidden, Unauthorized
from booking_backend.database import get_db
from booking_backend.models.user import ADMIN_ROLE, User

security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None or not credentials.credentials:
        raise Unauthorized()

    try:
        payload = jwt_handler.decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError as exc:
        raise Unauthorized('Token expired.') from exc
    except jwt.PyJWTError as exc:
        raise Unauthorized('Invalid token.') from exc

    email = payload.get("sub")
    if not email:
        raise Unauthorized('Invalid token subject.')

    user = db.query(User).filter(User.email == email).first()
    if user is None:
        raise Unauthorized('Invalid token. User not found.')
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != ADMIN_ROLE:
        raise Forbidden()
    return current_user
