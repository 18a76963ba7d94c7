"""Canonical phone -> tenant identity lookup (read-only)."""
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import Tenant, TenantContact


# (phone field, WhatsApp flags that enable it), checked in order.
CONTACT_PHONE_FIELDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("phone1", ("whatsapp1",)),
    ("phone2", ("whatsapp2",)),
    ("phone", ("whatsapp1", "whatsapp2")),
)


class TenantLookupError(Exception):
    """Tenant data could not be read."""


@dataclass(frozen=True)
class TenantIdentity:
    tenant_id: str
    name: str
    phone: str
    email: Optional[str] = None
    contact_field: str = "phone1"


def eligible_field(contact, phone: str, fields: Sequence[Tuple[str, Tuple[str, ...]]] = CONTACT_PHONE_FIELDS) -> Optional[str]:
    """Name of the first field holding ``phone`` with WhatsApp enabled, else None."""
    for field, flags in fields:
        if getattr(contact, field, None) == phone and any(getattr(contact, flag, False) for flag in flags):
            return field
    return None


class TenantResolver:
    def __init__(self, session_factory: Callable[[], Session], fields=CONTACT_PHONE_FIELDS):
        self._session_factory = session_factory
        self.fields = fields

    def find_eligible(self, phone: str) -> Optional[TenantIdentity]:
        if not phone:
            return None
        matches_phone = or_(*(getattr(TenantContact, field) == phone for field, _ in self.fields))
        stmt = (
            select(TenantContact, Tenant.name)
            .join(Tenant, Tenant.id == TenantContact.tenant_id)
            .where(matches_phone)
            .order_by(Tenant.created_at, Tenant.id, TenantContact.position, TenantContact.id)
        )
        try:
            with self._session_factory() as db:
                rows = db.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise TenantLookupError("tenant lookup failed") from exc
        for contact, tenant_name in rows:
            field = eligible_field(contact, phone, self.fields)
            if field:
                return TenantIdentity(
                    tenant_id=contact.tenant_id,
                    name=tenant_name,
                    phone=phone,
                    email=contact.email or None,
                    contact_field=field,
                )
        return None
