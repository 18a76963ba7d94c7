from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response, status
from homeport_shared import resolve_region
from homeport_shared.phone_utils import is_known_region

from ..config import settings
from ..otp_auth import OTPAuthenticator
from ..schemas import SessionUser, SignedInOut, WhatsAppSigninIn


router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])

REGION_COOKIE_MAX_AGE = 365 * 24 * 3600


def get_authenticator(request: Request) -> OTPAuthenticator:
    return request.app.state.otp_authenticator


def region_for(request: Request, explicit: Optional[str]) -> Optional[str]:
    return resolve_region(
        explicit,
        request.cookies.get(settings.REGION_COOKIE_NAME),
        request.headers.get("accept-language"),
        settings.DEFAULT_PHONE_REGION,
    )


def _cookie_kwargs() -> dict:
    return {"httponly": True, "samesite": "lax", "secure": settings.SESSION_COOKIE_SECURE, "path": "/"}


@router.post("/signin", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def whatsapp_signin(
    payload: WhatsAppSigninIn,
    request: Request,
    background_tasks: BackgroundTasks,
    authenticator: OTPAuthenticator = Depends(get_authenticator),
):
    outcome = authenticator.request_challenge(payload.phoneNumber, region_for(request, payload.region))

    # Same response for every well-formed request, whatever happened inside.
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    response.set_cookie(
        settings.OTP_CONTEXT_COOKIE_NAME,
        authenticator.signer.sign_context(outcome.phone, settings.otp_context_max_age),
        max_age=settings.otp_context_max_age,
        **_cookie_kwargs(),
    )
    if is_known_region(payload.region):
        response.set_cookie(
            settings.REGION_COOKIE_NAME,
            payload.region.upper(),
            max_age=REGION_COOKIE_MAX_AGE,
            **_cookie_kwargs(),
        )
    if outcome.delivery is not None:
        background_tasks.add_task(authenticator.deliver, outcome.delivery)
    return response


@router.get("/signedin", response_model=SignedInOut)
def whatsapp_signed_in(
    request: Request,
    response: Response,
    otp: Optional[str] = Query(default=None),
    phoneNumber: Optional[str] = Query(default=None),
    region: Optional[str] = Query(default=None),
    authenticator: OTPAuthenticator = Depends(get_authenticator),
):
    phone_hint = phoneNumber or authenticator.signer.read_context(
        request.cookies.get(settings.OTP_CONTEXT_COOKIE_NAME)
    )
    credential = authenticator.verify(otp, phone_hint, region_for(request, region))

    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        credential.token,
        max_age=credential.expires_at - credential.issued_at,
        **_cookie_kwargs(),
    )
    response.delete_cookie(settings.OTP_CONTEXT_COOKIE_NAME, path="/")
    account = credential.account()
    return SignedInOut(
        sessionToken=credential.token,
        phone=credential.phone,
        tenantId=credential.tenant_id,
        email=credential.email,
        role=credential.role,
        user=SessionUser(**account),
    )
