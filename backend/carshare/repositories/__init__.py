# backend/carshare/repositories/__init__.py
"""
Repository layer for data access, separating business logic from queries.

Usage:
    from carshare.repositories import RepositoryFactory

    payments = RepositoryFactory.create_payment_repository(db)
    payment = payments.get_by_checkout_session_id(session_id)
"""

from .base_repository import BaseRepository
from .factory import RepositoryFactory

__all__ = ["BaseRepository", "RepositoryFactory"]
