import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, Integer, String, Date, DateTime, ForeignKey, Boolean, JSON, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlalchemy.orm import relationship

from .database import Base


class ExactDecimal(TypeDecorator):
    """Decimal stored as its string form so any precision survives a round trip."""
    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


# Money, hours and rates are kept as exact decimals; nothing is rounded on storage.
Money = ExactDecimal


def new_id() -> str:
    return str(uuid.uuid4())


class CompanyProfile(Base):
    """The user's own company ("my company"). One per owner, merged on edit, never deleted."""
    __tablename__ = "company_profiles"
    id = Column(String, primary_key=True, default=new_id)
    owner_id = Column(String, index=True, unique=True)  # Supabase user ID (UUID string)
    name = Column(String)
    address = Column(String)
    tax_id = Column(String)
    iban = Column(String, nullable=True)
    bank_name = Column(String, nullable=True)
    swift = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    vat_rate = Column(Money)
    logo_path = Column(String, nullable=True)


class Client(Base):
    __tablename__ = "clients"
    id = Column(String, primary_key=True, default=new_id)
    owner_id = Column(String, index=True)
    name = Column(String, index=True)
    address = Column(String)
    tax_id = Column(String)
    iban = Column(String, nullable=True)
    bank_name = Column(String, nullable=True)
    swift = Column(String, nullable=True)
    language = Column(String, default="English")
    currency = Column(String, default="EUR")
    has_vat = Column(Boolean, default=False)
    max_exchange_rate = Column(Money, nullable=True)
    max_exchange_rate_date = Column(Date, nullable=True)
    invoice_number_prefix = Column(String, nullable=True)
    payment_terms = Column(Integer, default=30)
    order = Column(Integer, default=0)


class Project(Base):
    __tablename__ = "projects"
    id = Column(String, primary_key=True, default=new_id)
    owner_id = Column(String, index=True)
    name = Column(String, index=True)
    client_id = Column(String, index=True)
    client_name = Column(String)
    currency = Column(String, default="EUR")
    has_vat = Column(Boolean, default=False)
    rate = Column(Money, nullable=True)
    rate_type = Column(String, default="daily")
    hours_per_day = Column(Money, nullable=True)
    max_exchange_rate = Column(Money, nullable=True)
    max_exchange_rate_date = Column(Date, nullable=True)
    invoice_number_prefix = Column(String, nullable=True)
    invoice_theme = Column(String, default="Classic")
    order = Column(Integer, default=0)


class Timecard(Base):
    __tablename__ = "timecards"
    id = Column(String, primary_key=True, default=new_id)
    owner_id = Column(String, index=True)
    project_id = Column(String, index=True)
    project_name = Column(String)
    client_id = Column(String, index=True)
    client_name = Column(String)
    start_date = Column(Date)
    end_date = Column(Date)
    hours = Column(Money)
    description = Column(String, nullable=True)
    status = Column(String, default="Unbilled", index=True)
    invoice_id = Column(String, nullable=True)  # back-reference, set only by the invoice save
    created_at = Column(DateTime, default=datetime.utcnow)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (UniqueConstraint("owner_id", "invoice_number", name="uq_invoice_number_per_owner"),)

    id = Column(String, primary_key=True, default=new_id)
    owner_id = Column(String, index=True)
    invoice_number = Column(String, index=True)

    # Snapshot of both parties as they were when the invoice was issued
    company_name = Column(String)
    company_address = Column(String)
    company_vat = Column(String)
    company_iban = Column(String, nullable=True)
    company_bank_name = Column(String, nullable=True)
    company_swift = Column(String, nullable=True)
    company_phone = Column(String, nullable=True)
    company_email = Column(String, nullable=True)
    client_id = Column(String, index=True)
    client_name = Column(String)
    client_address = Column(String)
    client_vat = Column(String)
    client_iban = Column(String, nullable=True)
    client_bank_name = Column(String, nullable=True)
    client_swift = Column(String, nullable=True)

    project_id = Column(String, index=True)
    project_name = Column(String)
    date = Column(Date)
    due_date = Column(Date)
    currency = Column(String)
    language = Column(String)

    subtotal = Column(Money)
    vat_amount = Column(Money)
    vat_rate = Column(Money, nullable=True)  # NULL: VAT not applicable
    total = Column(Money)
    total_ron = Column(Money, nullable=True)
    exchange_rate = Column(Money, nullable=True)
    exchange_rate_date = Column(Date, nullable=True)
    used_max_exchange_rate = Column(Boolean, default=False)

    status = Column(String, default="Created")
    billed_timecard_ids = Column(JSON, default=list)
    theme = Column(String, default="Classic")
    created_at = Column(DateTime, default=datetime.utcnow)

    items = relationship("LineItem", back_populates="invoice", cascade="all, delete-orphan", order_by="LineItem.position")


class LineItem(Base):
    __tablename__ = "line_items"
    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(String, ForeignKey("invoices.id"))
    position = Column(Integer, default=0)
    description = Column(String)
    quantity = Column(Money)
    unit = Column(String)
    rate = Column(Money)
    amount = Column(Money)

    invoice = relationship("Invoice", back_populates="items")
