import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid() -> str:
    return str(uuid.uuid4())


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=default_uuid)
    name = Column(String(256), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    contacts = relationship("TenantContact", back_populates="tenant", order_by="TenantContact.position")


class TenantContact(Base):
    """One contact entry of a tenant.

    ``phone1``/``phone2`` each have their own WhatsApp flag. ``phone`` is the
    older single-number field; it is eligible when either flag is set.
    Phones are stored in E.164.
    """

    __tablename__ = "tenant_contacts"

    id = Column(String(36), primary_key=True, default=default_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    contact = Column(String(256), nullable=True)
    email = Column(String(256), nullable=True)
    phone = Column(String(32), nullable=True, index=True)
    phone1 = Column(String(32), nullable=True, index=True)
    phone2 = Column(String(32), nullable=True, index=True)
    whatsapp1 = Column(Boolean, nullable=False, default=False)
    whatsapp2 = Column(Boolean, nullable=False, default=False)

    tenant = relationship("Tenant", back_populates="contacts")
