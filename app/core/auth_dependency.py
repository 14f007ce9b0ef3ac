"""
Request dependencies shared by the billing routers.

Bearer tokens are issued by the account service and signed with the shared
SECRET_KEY; billing only reads the subject (the user's email).
"""
import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from app.core.config import SECRET_KEY, ALGORITHM
from app.db.session import SessionLocal
from app.db.models.user import User

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

_credentials_error = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid token",
    headers={"WWW-Authenticate": "Bearer"},
)


def get_db():
    """Ledger session per request; closed when the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(token: str = Depends(oauth2_scheme)) -> str:
    """Email claim of a valid bearer token."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise _credentials_error

    email = payload.get("sub")
    if not email:
        raise _credentials_error
    return email


def get_current_user_obj(
    email: str = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> User:
    """Account row for the token subject. Unknown accounts are treated like a bad token."""
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        logger.warning(f"Token subject has no billing account: {email}")
        raise _credentials_error
    return user
