# backend/carshare/routes/v1/deposit_cases.py
"""
Deposit case routes - API v1

Endpoints:
    POST / - Host files a claim against the held deposit
    POST /{case_id}/review - Support takes an open case under review
    POST /{case_id}/resolve - Support resolves a case
    GET /payment/{payment_id} - Active cases for a payment
"""

import asyncio
import logging

from fastapi import APIRouter, Body, Depends, status

from ...api.dependencies import get_current_user, get_deposit_case_service, require_support_user
from ...core.exceptions import DomainException
from ...models.user import User
from ...schemas.deposit_case_schemas import (
    DepositCaseList,
    DepositCaseResponse,
    FileDepositCaseRequest,
    FileDepositCaseResponse,
    ResolveDepositCaseRequest,
    ResolveDepositCaseResponse,
)
from ...services.deposit_case_service import DepositCaseService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["deposit-cases-v1"])


@router.post("", response_model=FileDepositCaseResponse, status_code=status.HTTP_201_CREATED)
async def file_deposit_case(
    payload: FileDepositCaseRequest = Body(...),
    current_user: User = Depends(get_current_user),
    deposit_case_service: DepositCaseService = Depends(get_deposit_case_service),
) -> FileDepositCaseResponse:
    try:
        return await asyncio.to_thread(
            deposit_case_service.file_deposit_case,
            current_user,
            payload.booking_id,
            reason=payload.reason,
            requested_amount=payload.requested_amount,
        )
    except DomainException as e:
        raise e.to_http_exception()


@router.post("/{case_id}/review", response_model=DepositCaseResponse)
async def review_deposit_case(
    case_id: str,
    support_user: User = Depends(require_support_user),
    deposit_case_service: DepositCaseService = Depends(get_deposit_case_service),
) -> DepositCaseResponse:
    try:
        deposit_case = await asyncio.to_thread(
            deposit_case_service.mark_case_under_review, support_user, case_id
        )
    except DomainException as e:
        raise e.to_http_exception()
    return DepositCaseResponse.model_validate(deposit_case)


@router.post("/{case_id}/resolve", response_model=ResolveDepositCaseResponse)
async def resolve_deposit_case(
    case_id: str,
    payload: ResolveDepositCaseRequest = Body(...),
    support_user: User = Depends(require_support_user),
    deposit_case_service: DepositCaseService = Depends(get_deposit_case_service),
) -> ResolveDepositCaseResponse:
    try:
        return await asyncio.to_thread(
            deposit_case_service.resolve_deposit_case,
            support_user,
            case_id,
            payload.resolution,
            resolution_amount=payload.resolution_amount,
            reviewer_note=payload.reviewer_note,
        )
    except DomainException as e:
        raise e.to_http_exception()


@router.get("/payment/{payment_id}", response_model=DepositCaseList)
async def list_deposit_cases_for_payment(
    payment_id: str,
    current_user: User = Depends(get_current_user),
    deposit_case_service: DepositCaseService = Depends(get_deposit_case_service),
) -> DepositCaseList:
    try:
        cases = await asyncio.to_thread(
            deposit_case_service.list_for_payment, current_user, payment_id
        )
    except DomainException as e:
        raise e.to_http_exception()
    return DepositCaseList(items=[DepositCaseResponse.model_validate(case) for case in cases])
