from fastapi import APIRouter, Depends, HTTPException, status

from storefront_otp.config import settings
from storefront_otp.schemas.otp import (
    IssueStatus,
    OtpRequest,
    OtpResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
    VerifyStatus,
)
from storefront_otp.services.otp import OtpService, otp_service

router = APIRouter(prefix="/otp", tags=["otp"])


def get_otp_service() -> OtpService:
    return otp_service


@router.post("/request", response_model=OtpResponse, response_model_exclude_none=True)
def request_otp(
    payload: OtpRequest, service: OtpService = Depends(get_otp_service)
) -> OtpResponse:
    result = service.issue(payload.recipient, payload.purpose, payload.context)
    if result.status == IssueStatus.RATE_LIMITED:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=result.message,
            headers={"Retry-After": str(result.retry_after_seconds)},
        )
    if result.status == IssueStatus.INVALID_REQUEST:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=result.message,
        )
    if result.status == IssueStatus.STORE_FAILURE:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=result.message,
        )
    return OtpResponse(
        message=result.message,
        expires_in_seconds=service.policy_for(payload.purpose).ttl_seconds,
        delivered=result.delivered,
        otp=result.code if settings.otp_debug else None,
    )


@router.post("/verify", response_model=OtpVerifyResponse)
def verify_otp(
    payload: OtpVerifyRequest, service: OtpService = Depends(get_otp_service)
) -> OtpVerifyResponse:
    result = service.verify(payload.recipient, payload.purpose, payload.code)
    if result.status == VerifyStatus.STORE_FAILURE:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=result.message,
        )
    if not result.valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.message,
        )
    return OtpVerifyResponse(message=result.message, verified=True)
