# backend/carshare/services/deposit_case_service.py
"""
Deposit Case Service

Hosts file a claim against the held deposit after the trip; support staff
review and resolve it. Resolution records the outcome on the case and the
payment's deposit status. Paying out or refunding the resolved amount is
done by support outside this service.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import (
    ForbiddenException,
    NotFoundException,
    UnauthorizedException,
    ValidationException,
)
from ..models.booking import BookingStatus
from ..models.deposit_case import (
    RESOLVABLE_DEPOSIT_CASE_STATUSES,
    DepositCase,
    DepositCaseResolution,
    DepositCaseStatus,
)
from ..models.payment import DepositStatus
from ..models.user import User
from ..repositories import RepositoryFactory
from ..schemas.deposit_case_schemas import FileDepositCaseResponse, ResolveDepositCaseResponse
from ..utils.money import quantize_amount, to_decimal
from ..utils.time_utils import Clock, as_utc
from .base import BaseService

RESOLUTION_CASE_STATUS = {
    DepositCaseResolution.APPROVE: DepositCaseStatus.APPROVED,
    DepositCaseResolution.PARTIAL: DepositCaseStatus.PARTIALLY_APPROVED,
    DepositCaseResolution.REJECT: DepositCaseStatus.REJECTED,
}

# What happens to the renter's deposit for each outcome
RESOLUTION_DEPOSIT_STATUS = {
    DepositCaseResolution.APPROVE: DepositStatus.RETAINED,
    DepositCaseResolution.PARTIAL: DepositStatus.PARTIALLY_REFUNDED,
    DepositCaseResolution.REJECT: DepositStatus.REFUNDED,
}


def clamp_amount(value: Decimal, ceiling: Decimal) -> Decimal:
    return quantize_amount(max(Decimal("0"), min(value, ceiling)))


def default_resolution_amount(resolution: DepositCaseResolution, requested: Decimal) -> Decimal:
    if resolution == DepositCaseResolution.APPROVE:
        return requested
    if resolution == DepositCaseResolution.PARTIAL:
        return requested / 2
    return Decimal("0")


class DepositCaseService(BaseService):
    def __init__(self, db: Session, now: Optional[Clock] = None):
        super().__init__(db, now)
        self.deposit_case_repository = RepositoryFactory.create_deposit_case_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.host_repository = RepositoryFactory.create_host_repository(db)

    @BaseService.measure_operation("file_deposit_case")
    def file_deposit_case(
        self,
        user: User,
        booking_id: str,
        *,
        reason: str,
        requested_amount: Optional[Decimal] = None,
    ) -> FileDepositCaseResponse:
        """
        Open a claim against the held deposit.

        Raises:
            UnauthorizedException: caller is not the booking's host
            NotFoundException: booking or payment missing
            ValidationException: trip not completed, no deposit, deposit not
                held, claim window over, or an active case exists
        """
        host = self.host_repository.get_by_user_id(user.id)
        if host is None:
            raise UnauthorizedException("UNAUTHORIZED: Host account required.")

        with self.transaction():
            booking = self.booking_repository.get_by_id(booking_id)
            if booking is None:
                raise NotFoundException("NOT_FOUND: Booking not found.")
            payment = self.payment_repository.get_by_booking_id(booking.id)
            if payment is None:
                raise NotFoundException("NOT_FOUND: Payment not found.")
            # Lock the payment so two filings serialize
            payment = self.payment_repository.get_by_id(payment.id, for_update=True)
            if payment.host_id != host.id:
                raise UnauthorizedException("UNAUTHORIZED: You do not own this booking.")
            if booking.status != BookingStatus.COMPLETED.value:
                raise ValidationException(
                    "INVALID_INPUT: Deposit case can be filed only after trip completion."
                )
            deposit = quantize_amount(payment.deposit_amount)
            if deposit <= 0:
                raise ValidationException("INVALID_INPUT: This booking has no deposit.")
            if payment.deposit_status != DepositStatus.HELD.value:
                raise ValidationException("INVALID_INPUT: Deposit is not eligible for new case.")
            if (
                payment.deposit_claim_window_ends_at is not None
                and self.now() >= as_utc(payment.deposit_claim_window_ends_at)
            ):
                raise ValidationException("INVALID_INPUT: Deposit claim window has ended.")
            if self.deposit_case_repository.list_active_for_payment(payment.id):
                raise ValidationException(
                    "INVALID_INPUT: A deposit case already exists for this booking."
                )

            requested = clamp_amount(
                to_decimal(requested_amount) if requested_amount is not None else deposit, deposit
            )
            deposit_case = self.deposit_case_repository.create(
                payment_id=payment.id,
                booking_id=booking.id,
                host_id=host.id,
                renter_id=booking.renter_id,
                requested_amount=requested,
                status=DepositCaseStatus.OPEN.value,
                reason=(reason or "").strip() or "No reason provided",
            )
            payment.deposit_status = DepositStatus.CASE_SUBMITTED.value
            payment.updated_at = self.now()

        self.logger.info(
            f"Host {host.id} filed deposit case {deposit_case.id} for payment {payment.id}: {requested}"
        )
        return FileDepositCaseResponse(
            case_id=deposit_case.id,
            payment_id=payment.id,
            booking_id=booking.id,
            requested_amount=requested,
        )

    @BaseService.measure_operation("mark_deposit_case_under_review")
    def mark_case_under_review(self, user: User, case_id: str) -> DepositCase:
        self._require_support(user)
        with self.transaction():
            deposit_case = self.deposit_case_repository.get_by_id(case_id, for_update=True)
            if deposit_case is None:
                raise NotFoundException("NOT_FOUND: Deposit case not found.")
            if deposit_case.status != DepositCaseStatus.OPEN.value:
                raise ValidationException("INVALID_INPUT: Only open cases can be reviewed.")
            deposit_case.status = DepositCaseStatus.UNDER_REVIEW.value
        return deposit_case

    @BaseService.measure_operation("resolve_deposit_case")
    def resolve_deposit_case(
        self,
        user: User,
        case_id: str,
        resolution: DepositCaseResolution,
        *,
        resolution_amount: Optional[Decimal] = None,
        reviewer_note: Optional[str] = None,
    ) -> ResolveDepositCaseResponse:
        """
        Record support's decision on a case.

        The amount defaults to all, half or none of the requested amount and
        is clamped to the deposit. A resolved case cannot be resolved again.
        """
        self._require_support(user)
        resolution = DepositCaseResolution(resolution)
        with self.transaction():
            deposit_case = self.deposit_case_repository.get_by_id(case_id, for_update=True)
            if deposit_case is None:
                raise NotFoundException("NOT_FOUND: Deposit case not found.")
            payment = self.payment_repository.get_by_id(deposit_case.payment_id, for_update=True)
            if payment is None:
                raise NotFoundException("NOT_FOUND: Payment not found.")
            if deposit_case.status not in RESOLVABLE_DEPOSIT_CASE_STATUSES:
                raise ValidationException("INVALID_INPUT: Deposit case is already resolved.")

            requested = to_decimal(deposit_case.requested_amount)
            ceiling = to_decimal(payment.deposit_amount) if payment.deposit_amount is not None else requested
            amount = clamp_amount(
                to_decimal(resolution_amount)
                if resolution_amount is not None
                else default_resolution_amount(resolution, requested),
                ceiling,
            )
            status = RESOLUTION_CASE_STATUS[resolution]

            note = (reviewer_note or "").strip()
            if note:
                deposit_case.reason = f"{deposit_case.reason}\n[Support note] {note}"
            deposit_case.status = status.value
            deposit_case.resolution_amount = amount
            deposit_case.resolved_by_user_id = user.id
            deposit_case.resolved_at = self.now()

            payment.deposit_status = RESOLUTION_DEPOSIT_STATUS[resolution].value
            payment.updated_at = self.now()

        self.logger.info(
            f"Support user {user.id} resolved deposit case {case_id} as {status.value} ({amount})"
        )
        return ResolveDepositCaseResponse(
            case_id=deposit_case.id,
            status=deposit_case.status,
            resolution_amount=amount,
            deposit_status=payment.deposit_status,
        )

    @BaseService.measure_operation("list_deposit_cases_for_payment")
    def list_for_payment(self, user: User, payment_id: str) -> List[DepositCase]:
        """Active cases for a payment; visible to support and the payment's host."""
        payment = self.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise NotFoundException("NOT_FOUND: Payment not found.")
        if not user.is_support:
            host = self.host_repository.get_by_user_id(user.id)
            if host is None or host.id != payment.host_id:
                raise ForbiddenException("FORBIDDEN: You cannot view these deposit cases.")
        return self.deposit_case_repository.list_active_for_payment(payment.id)

    @staticmethod
    def _require_support(user: User) -> None:
        if not user.is_support:
            raise ForbiddenException("FORBIDDEN: Support access required.")
