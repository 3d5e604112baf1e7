import calendar
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from timebill import config
from timebill.schemas import BillableQuantity, BillingTerms, GenerationMode, RateType, TimecardStatus


def service_period_label(month: int, year: int) -> str:
    return f"{calendar.month_name[month]} {year}"


def line_item_description(project_name: str, month: int, year: int) -> str:
    return f"{project_name.strip()}: Consultancy services for {service_period_label(month, year)}"


def unit_for(rate_type: RateType) -> str:
    return "hours" if rate_type == RateType.HOURLY else "days"


def _has_rate(terms: BillingTerms) -> bool:
    return terms.rate is not None and terms.rate > 0


def resolve_manual(terms: BillingTerms, quantity: Optional[Decimal], project_name: str,
                   month: int, year: int) -> Optional[BillableQuantity]:
    """Quantity typed in by the user, in the unit of the project's rate."""
    if quantity is None or quantity <= 0 or not _has_rate(terms):
        return None
    return BillableQuantity(
        quantity=Decimal(quantity),
        unit=unit_for(terms.rate_type),
        description=line_item_description(project_name, month, year),
        timecard_ids=[],
    )


def unbilled_timecards_for_period(timecards: Iterable, project_id: str, month: int, year: int) -> list:
    """Unbilled timecards of the project that start inside the service month."""
    candidates = [
        tc for tc in timecards
        if tc.project_id == project_id
        and tc.status == TimecardStatus.UNBILLED
        and tc.start_date is not None
        and tc.start_date.year == year
        and tc.start_date.month == month
    ]
    return sorted(candidates, key=lambda tc: tc.start_date)


def resolve_from_timecards(terms: BillingTerms, selected: Sequence, project_name: str,
                           month: int, year: int) -> Optional[BillableQuantity]:
    """Sum the selected timecards; daily projects bill hours / hours-per-day."""
    if not selected or not _has_rate(terms):
        return None

    total_hours = sum((Decimal(tc.hours) for tc in selected), Decimal("0"))
    if terms.rate_type == RateType.HOURLY:
        quantity = total_hours
    else:
        quantity = total_hours / (terms.hours_per_day or config.HOURS_PER_DAY)

    return BillableQuantity(
        quantity=quantity,
        unit=unit_for(terms.rate_type),
        description=line_item_description(project_name, month, year),
        timecard_ids=[tc.id for tc in selected],
    )


def select_timecards(candidates: Sequence, timecard_ids: Iterable[str], select_all: bool = False) -> List:
    """Keeps the candidates the user ticked, in candidate order. Unknown ids are dropped."""
    if select_all:
        return list(candidates)
    wanted = set(timecard_ids or [])
    return [tc for tc in candidates if tc.id in wanted]


def resolve_billable(mode: GenerationMode, terms: BillingTerms, project_id: str, project_name: str,
                     month: int, year: int, *, quantity: Optional[Decimal] = None,
                     timecards: Iterable = (), timecard_ids: Iterable[str] = (),
                     select_all: bool = False) -> Optional[BillableQuantity]:
    if mode == GenerationMode.MANUAL:
        return resolve_manual(terms, quantity, project_name, month, year)

    candidates = unbilled_timecards_for_period(timecards, project_id, month, year)
    selected = select_timecards(candidates, timecard_ids, select_all)
    return resolve_from_timecards(terms, selected, project_name, month, year)
