"""
FastAPI dependencies for authentication.
Provides get_current_user dependency that verifies Firebase JWT tokens.
"""
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from reviseflow.database import get_db
from reviseflow.models.user import User
from reviseflow.auth.firebase import verify_firebase_token

logger = logging.getLogger(__name__)

# HTTPBearer scheme for extracting Authorization header
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    FastAPI dependency that verifies Firebase JWT token and returns User.

    Flow:
    1. Extract Bearer token from Authorization header
    2. Verify token with Firebase Admin SDK
    3. Lookup user by firebase_uid, creating it on first use

    Entitlement is not created here; users without a row are treated as free.

    Raises:
        HTTPException 401: If token is missing, invalid, or expired
    """
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Missing authentication token")

    try:
        decoded_token = verify_firebase_token(credentials.credentials)
    except ValueError as e:
        raise _unauthorized(f"Invalid token: {str(e)}")

    firebase_uid = decoded_token.get("uid")
    email = decoded_token.get("email")
    if not firebase_uid:
        raise _unauthorized("Invalid token: missing uid")

    result = await db.execute(
        select(User).where(User.firebase_uid == firebase_uid)
    )
    user = result.scalar_one_or_none()

    if not user:
        user = User(firebase_uid=firebase_uid, email=email)
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent first request created the same user
            await db.rollback()
            result = await db.execute(
                select(User).where(User.firebase_uid == firebase_uid)
            )
            user = result.scalar_one()
        else:
            await db.refresh(user)
            logger.info(
                f"Created user {user.id}",
                extra={"event": "user_created", "user_id": user.id}
            )

    return user
