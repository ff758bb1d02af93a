# backend/carshare/api/dependencies/auth.py
"""
Authentication and authorization dependencies.

User rows are loaded with asyncio.to_thread so the sync ORM lookup does not
block the event loop.
"""

import asyncio
import logging

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from ...auth import get_current_user_id
from ...models.user import User
from ...repositories import RepositoryFactory
from .database import get_db

logger = logging.getLogger(__name__)


async def get_current_user(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the bearer token's subject to a ``User`` row.

    Raises:
        HTTPException: 401 if the user no longer exists
    """
    user_repository = RepositoryFactory.create_user_repository(db)
    user = await asyncio.to_thread(user_repository.get_by_id, user_id)
    if user is None:
        logger.warning(f"Token subject {user_id} has no user row")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def require_support_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_support:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "FORBIDDEN: Support access required.", "code": "FORBIDDEN"},
        )
    return current_user
