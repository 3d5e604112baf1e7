"""
Invoice assembly: billing terms, exchange-rate choice and the derived invoice record.

`build_invoice` is pure. It is recomputed from current inputs on every request and
nothing derived is cached between requests. The only I/O in this module is the
exchange-rate fetch done by `select_exchange_rate`.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, List, Optional

from timebill import billing, config, exchange_rates, schemas
from timebill.numbering import next_invoice_number

logger = logging.getLogger(__name__)

RateFetcher = Callable[[str], Awaitable[schemas.ExchangeRate]]


def billing_terms(client, project, owner: str = None) -> schemas.BillingTerms:
    """
    Currency, VAT flag, fixed exchange rate and numbering come either from the
    project (default) or from the client (older flow). Rate, rate type and
    hours per day always come from the project.
    """
    owner = (owner or config.BILLING_TERMS_OWNER).lower()
    source = client if owner == "client" else project
    return schemas.BillingTerms(
        currency=(source.currency or config.DEFAULT_CURRENCY).upper(),
        has_vat=bool(source.has_vat),
        rate=project.rate,
        rate_type=project.rate_type or schemas.RateType.DAILY,
        hours_per_day=project.hours_per_day,
        max_exchange_rate=source.max_exchange_rate,
        max_exchange_rate_date=source.max_exchange_rate_date,
        invoice_number_prefix=source.invoice_number_prefix,
        numbering_name=source.name.strip(),
        numbering_scope="client" if owner == "client" else "project",
    )


def invoice_history(invoices: Iterable, terms: schemas.BillingTerms, client_id: str, project_id: str) -> List[str]:
    """Invoice numbers already issued in the numbering scope of `terms`."""
    if terms.numbering_scope == "client":
        return [inv.invoice_number for inv in invoices if inv.client_id == client_id]
    return [inv.invoice_number for inv in invoices if inv.project_id == project_id]


async def select_exchange_rate(
    terms: schemas.BillingTerms,
    currency: Optional[str] = None,
    *,
    quoted: Optional[schemas.ExchangeRate] = None,
    fetch_rate: Optional[RateFetcher] = None,
    home_currency: str = None,
) -> schemas.ExchangeRateSelection:
    """
    Picks the exchange rate for an invoice in `currency`, in priority order:
    home currency (1), the contractually fixed rate, a rate quoted earlier by the
    caller, and finally one fetch from the provider.
    """
    currency = (currency or terms.currency).upper()
    home_currency = (home_currency or config.HOME_CURRENCY).upper()

    if currency == home_currency:
        return schemas.ExchangeRateSelection(currency=currency, rate=Decimal("1"), date=date.today())

    if terms.max_exchange_rate and terms.max_exchange_rate_date:
        logger.info("Using fixed exchange rate %s for %s", terms.max_exchange_rate, currency)
        return schemas.ExchangeRateSelection(
            currency=currency,
            rate=terms.max_exchange_rate,
            date=terms.max_exchange_rate_date,
            used_max_exchange_rate=True,
        )

    if quoted is not None and quoted.available:
        return schemas.ExchangeRateSelection(currency=currency, rate=quoted.rate, date=quoted.date)

    fetch_rate = fetch_rate or exchange_rates.get_exchange_rate
    fetched = await fetch_rate(currency)
    return schemas.ExchangeRateSelection(currency=currency, rate=fetched.rate, date=fetched.date)


def build_invoice(
    *,
    company,
    client,
    project,
    billable: Optional[schemas.BillableQuantity],
    exchange: Optional[schemas.ExchangeRateSelection],
    history: Iterable[str],
    issue_date: date,
    theme: Optional[str] = None,
    owner: str = None,
    home_currency: str = None,
) -> Optional[schemas.InvoiceDraft]:
    """
    Assembles the complete invoice record, or returns None when something required
    is missing: client, project, company profile, a billable quantity, or an
    exchange rate for a foreign currency.
    """
    if company is None or client is None or project is None or billable is None or exchange is None:
        return None

    terms = billing_terms(client, project, owner)
    if terms.rate is None or terms.rate <= 0:
        return None

    currency = exchange.currency.upper()
    home_currency = (home_currency or config.HOME_CURRENCY).upper()
    if currency == home_currency:
        exchange_rate, exchange_rate_date, used_max_rate = Decimal("1"), issue_date, False
    elif exchange.available:
        exchange_rate, exchange_rate_date, used_max_rate = exchange.rate, exchange.date, exchange.used_max_exchange_rate
    else:
        return None

    rate = Decimal(terms.rate)
    amount = billable.quantity * rate
    subtotal = amount

    if terms.has_vat:
        vat_rate = Decimal(company.vat_rate or 0)
        vat_amount = subtotal * vat_rate
    else:
        # Left unset so the record says "VAT not applicable" rather than 0%
        vat_rate = None
        vat_amount = Decimal("0")

    total = subtotal + vat_amount

    return schemas.InvoiceDraft(
        invoice_number=next_invoice_number(terms.numbering_name, terms.invoice_number_prefix, history),
        company_name=company.name,
        company_address=company.address,
        company_vat=company.tax_id,
        company_iban=company.iban,
        company_bank_name=company.bank_name,
        company_swift=company.swift,
        company_phone=company.phone,
        company_email=company.email,
        client_id=client.id,
        client_name=client.name,
        client_address=client.address,
        client_vat=client.tax_id,
        client_iban=client.iban,
        client_bank_name=client.bank_name,
        client_swift=client.swift,
        project_id=project.id,
        project_name=project.name.strip(),
        date=issue_date,
        due_date=issue_date + timedelta(days=client.payment_terms or 0),
        currency=currency,
        language=client.language or schemas.Language.ENGLISH,
        items=[schemas.LineItem(
            description=billable.description,
            quantity=billable.quantity,
            unit=billable.unit,
            rate=rate,
            amount=amount,
        )],
        subtotal=subtotal,
        vat_amount=vat_amount,
        vat_rate=vat_rate,
        total=total,
        total_ron=total * exchange_rate,
        exchange_rate=exchange_rate,
        exchange_rate_date=exchange_rate_date,
        used_max_exchange_rate=used_max_rate,
        billed_timecard_ids=list(billable.timecard_ids),
        theme=theme or project.invoice_theme or "Classic",
    )


async def compose_invoice(
    request: schemas.InvoiceRequest,
    *,
    company,
    client,
    project,
    timecards: Iterable = (),
    invoices: Iterable = (),
    issue_date: Optional[date] = None,
    fetch_rate: Optional[RateFetcher] = None,
    owner: str = None,
    home_currency: str = None,
) -> schemas.InvoicePreview:
    """Runs the whole pipeline for one dialog state and explains a missing invoice."""
    issue_date = issue_date or date.today()
    currency = request.currency or (client.currency if client else None) or config.DEFAULT_CURRENCY

    if client is None or project is None:
        return schemas.InvoicePreview(
            exchange_rate=schemas.ExchangeRateSelection(currency=currency),
            reason="Select a client and a project",
        )

    terms = billing_terms(client, project, owner)
    quoted = None
    quote_matches = request.exchange_rate_currency == (request.currency or terms.currency)
    if request.exchange_rate is not None and request.exchange_rate_date is not None and quote_matches:
        quoted = schemas.ExchangeRate(rate=request.exchange_rate, date=request.exchange_rate_date)
    exchange = await select_exchange_rate(
        terms, request.currency, quoted=quoted, fetch_rate=fetch_rate, home_currency=home_currency,
    )

    timecards = list(timecards)
    candidates = billing.unbilled_timecards_for_period(timecards, project.id, request.month, request.year)
    billable = billing.resolve_billable(
        request.mode, terms, project.id, project.name, request.month, request.year,
        quantity=request.quantity, timecards=candidates,
        timecard_ids=request.timecard_ids, select_all=request.select_all,
    )

    invoice = build_invoice(
        company=company, client=client, project=project, billable=billable, exchange=exchange,
        history=invoice_history(invoices, terms, client.id, project.id),
        issue_date=issue_date, theme=request.theme, owner=owner, home_currency=home_currency,
    )

    reason = None
    if invoice is None:
        if company is None:
            reason = "Company profile is missing"
        elif billable is None:
            reason = "Nothing to bill: enter a quantity or select timecards, and set a project rate"
        elif not exchange.available:
            reason = f"Exchange rate for {exchange.currency} is unavailable"
        else:
            reason = "Invoice cannot be generated"

    return schemas.InvoicePreview(
        invoice=invoice,
        exchange_rate=exchange,
        candidate_timecards=[schemas.Timecard.model_validate(tc) for tc in candidates],
        reason=reason,
    )
