from __future__ import annotations
from typing import Optional
from pydantic import BaseModel, Field


class WhatsAppSigninIn(BaseModel):
    phoneNumber: str = Field(min_length=1, max_length=64)
    # ISO 3166 region picked in the UI for numbers typed without a country code
    region: Optional[str] = Field(default=None, max_length=3)


class SessionUser(BaseModel):
    email: str
    phone: Optional[str] = None
    role: str = "tenant"
    tenantId: str


class SignedInOut(BaseModel):
    sessionToken: str
    phone: str
    tenantId: str
    email: str
    role: str = "tenant"
    user: SessionUser


class SessionOut(SessionUser):
    pass
