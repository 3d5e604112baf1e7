from datetime import date, datetime
import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

INVOICE_THEMES = (
    'Classic', 'Modern', 'Sunset', 'Ocean', 'Monochrome', 'Minty', 'Velvet',
    'Corporate Blue', 'Earthy Tones', 'Creative', 'Slate Gray', 'Dark Charcoal',
    'Navy Blue', 'Forest Green', 'Burgundy', 'Teal', 'Coral', 'Lavender',
    'Golden', 'Steel Blue', 'Light Blue', 'Sky Blue', 'Mint Green', 'Lime',
    'Peach', 'Rose', 'Lilac', 'Sand', 'Olive', 'Maroon', 'Deep Purple',
    'Turquoise', 'Charcoal', 'Crimson', 'Sapphire',
)


class Language(str, Enum):
    ENGLISH = "English"
    ROMANIAN = "Romanian"


class RateType(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"


class TimecardStatus(str, Enum):
    UNBILLED = "Unbilled"
    BILLED = "Billed"


class InvoiceStatus(str, Enum):
    CREATED = "Created"
    SENT = "Sent"
    PAID = "Paid"


class GenerationMode(str, Enum):
    MANUAL = "manual"
    TIMECARDS = "timecards"


def _upper_currency(value: Optional[str]) -> Optional[str]:
    return value.strip().upper() if value else value


def _fixed_rate_needs_date(model):
    if (model.max_exchange_rate is None) != (model.max_exchange_rate_date is None):
        raise ValueError("A fixed exchange rate needs both a rate and a date")
    return model


# --- Company Profile ---

class CompanyProfileBase(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    tax_id: Optional[str] = None
    iban: Optional[str] = None
    bank_name: Optional[str] = None
    swift: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    vat_rate: Optional[Decimal] = Field(default=None, ge=0, le=1)


class CompanyProfileUpdate(CompanyProfileBase):
    pass


class CompanyProfile(CompanyProfileBase):
    id: str
    owner_id: str
    logo_path: Optional[str] = None

    class Config:
        from_attributes = True


# --- Clients ---

class ClientBase(BaseModel):
    name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    tax_id: str = Field(min_length=1)
    iban: Optional[str] = None
    bank_name: Optional[str] = None
    swift: Optional[str] = None
    language: Language = Language.ENGLISH
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    has_vat: bool = False
    max_exchange_rate: Optional[Decimal] = Field(default=None, gt=0)
    max_exchange_rate_date: Optional[date] = None
    invoice_number_prefix: Optional[str] = None
    payment_terms: int = Field(default=30, ge=0)
    order: int = 0

    normalize_currency = field_validator("currency")(_upper_currency)
    fixed_rate_needs_date = model_validator(mode="after")(_fixed_rate_needs_date)

    class Config:
        use_enum_values = True
        validate_default = True


class ClientCreate(ClientBase):
    pass


class Client(ClientBase):
    id: str
    owner_id: str

    class Config:
        from_attributes = True


# --- Projects ---

class ProjectBase(BaseModel):
    name: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    has_vat: bool = False
    rate: Optional[Decimal] = Field(default=None, gt=0)
    rate_type: RateType = RateType.DAILY
    hours_per_day: Optional[Decimal] = Field(default=None, gt=0, le=24)
    max_exchange_rate: Optional[Decimal] = Field(default=None, gt=0)
    max_exchange_rate_date: Optional[date] = None
    invoice_number_prefix: Optional[str] = None
    invoice_theme: str = "Classic"
    order: int = 0

    normalize_currency = field_validator("currency")(_upper_currency)
    fixed_rate_needs_date = model_validator(mode="after")(_fixed_rate_needs_date)

    class Config:
        use_enum_values = True
        validate_default = True


class ProjectCreate(ProjectBase):
    pass


class Project(ProjectBase):
    id: str
    owner_id: str
    client_name: str

    class Config:
        from_attributes = True


# --- Timecards ---

class TimecardBase(BaseModel):
    project_id: str = Field(min_length=1)
    start_date: date
    end_date: Optional[date] = None
    hours: Decimal = Field(ge=Decimal("0.25"), le=1000)
    description: Optional[str] = None

    @model_validator(mode="after")
    def default_end_date(self):
        if self.end_date is None:
            self.end_date = self.start_date
        elif self.end_date < self.start_date:
            raise ValueError("end_date cannot be before start_date")
        return self


class TimecardCreate(TimecardBase):
    pass


class Timecard(TimecardBase):
    id: str
    owner_id: str
    project_name: str
    client_id: Optional[str] = None
    client_name: str
    status: TimecardStatus = TimecardStatus.UNBILLED
    invoice_id: Optional[str] = None

    class Config:
        from_attributes = True


# --- Exchange rates ---

class ExchangeRate(BaseModel):
    rate: Optional[Decimal] = None
    date: Optional[dt.date] = None

    @property
    def available(self) -> bool:
        return self.rate is not None and self.date is not None


class ExchangeRateSelection(ExchangeRate):
    currency: str
    used_max_exchange_rate: bool = False


# --- Invoice pipeline ---

class BillingTerms(BaseModel):
    """Currency, VAT and numbering rules resolved from the client or the project."""
    currency: str
    has_vat: bool = False
    rate: Optional[Decimal] = None
    rate_type: RateType = RateType.DAILY
    hours_per_day: Optional[Decimal] = None
    max_exchange_rate: Optional[Decimal] = None
    max_exchange_rate_date: Optional[date] = None
    invoice_number_prefix: Optional[str] = None
    numbering_name: str
    numbering_scope: str = "project"


class BillableQuantity(BaseModel):
    quantity: Decimal
    unit: str
    description: str
    timecard_ids: List[str] = []


class LineItem(BaseModel):
    description: str
    quantity: Decimal
    unit: str
    rate: Decimal
    amount: Decimal

    class Config:
        from_attributes = True


class InvoiceDraft(BaseModel):
    invoice_number: str
    company_name: Optional[str] = None
    company_address: Optional[str] = None
    company_vat: Optional[str] = None
    company_iban: Optional[str] = None
    company_bank_name: Optional[str] = None
    company_swift: Optional[str] = None
    company_phone: Optional[str] = None
    company_email: Optional[str] = None
    client_id: str
    client_name: str
    client_address: Optional[str] = None
    client_vat: Optional[str] = None
    client_iban: Optional[str] = None
    client_bank_name: Optional[str] = None
    client_swift: Optional[str] = None
    project_id: str
    project_name: str
    date: dt.date
    due_date: date
    currency: str
    language: Language = Language.ENGLISH
    items: List[LineItem]
    subtotal: Decimal
    vat_amount: Decimal
    vat_rate: Optional[Decimal] = None
    total: Decimal
    total_ron: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    exchange_rate_date: Optional[date] = None
    used_max_exchange_rate: bool = False
    status: InvoiceStatus = InvoiceStatus.CREATED
    billed_timecard_ids: List[str] = []
    theme: str = "Classic"

    class Config:
        use_enum_values = True
        validate_default = True


class Invoice(InvoiceDraft):
    id: str
    owner_id: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InvoiceRequest(BaseModel):
    """What the user picked in the invoice dialog."""
    client_id: str
    project_id: str
    mode: GenerationMode = GenerationMode.TIMECARDS
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2000, le=2100)
    quantity: Optional[Decimal] = None
    timecard_ids: List[str] = []
    select_all: bool = False
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    theme: Optional[str] = None
    # Rate quoted by an earlier preview or manual refresh, reused only for the same currency
    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)
    exchange_rate_date: Optional[date] = None
    exchange_rate_currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    normalize_currency = field_validator("currency")(_upper_currency)
    normalize_rate_currency = field_validator("exchange_rate_currency")(_upper_currency)


class InvoicePreview(BaseModel):
    invoice: Optional[InvoiceDraft] = None
    exchange_rate: ExchangeRateSelection
    candidate_timecards: List[Timecard] = []
    reason: Optional[str] = None


class InvoiceStatusUpdate(BaseModel):
    status: InvoiceStatus
