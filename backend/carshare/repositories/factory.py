# backend/carshare/repositories/factory.py
"""
Repository Factory

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

# Avoid circular imports
if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .car_repository import CarRepository
    from .deposit_case_repository import DepositCaseRepository
    from .host_repository import HostRepository
    from .payment_repository import PaymentRepository
    from .scheduled_action_repository import ScheduledActionRepository
    from .user_repository import UserRepository
    from .webhook_event_repository import WebhookEventRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_user_repository(db: Session) -> "UserRepository":
        from .user_repository import UserRepository

        return UserRepository(db)

    @staticmethod
    def create_host_repository(db: Session) -> "HostRepository":
        from .host_repository import HostRepository

        return HostRepository(db)

    @staticmethod
    def create_car_repository(db: Session) -> "CarRepository":
        from .car_repository import CarRepository

        return CarRepository(db)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> "PaymentRepository":
        from .payment_repository import PaymentRepository

        return PaymentRepository(db)

    @staticmethod
    def create_deposit_case_repository(db: Session) -> "DepositCaseRepository":
        from .deposit_case_repository import DepositCaseRepository

        return DepositCaseRepository(db)

    @staticmethod
    def create_scheduled_action_repository(db: Session) -> "ScheduledActionRepository":
        from .scheduled_action_repository import ScheduledActionRepository

        return ScheduledActionRepository(db)

    @staticmethod
    def create_webhook_event_repository(db: Session) -> "WebhookEventRepository":
        from .webhook_event_repository import WebhookEventRepository

        return WebhookEventRepository(db)
