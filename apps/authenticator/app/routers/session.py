from fastapi import APIRouter, Depends, Response, status

from ..auth import SessionCredential, get_current_session
from ..config import settings
from ..schemas import SessionOut


router = APIRouter(tags=["session"])


@router.get("/session", response_model=SessionOut)
def current_session(session: SessionCredential = Depends(get_current_session)):
    return SessionOut(**session.account())


@router.delete("/signout", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def signout():
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
    return response
