from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from timebill import crud, models, schemas
from timebill.invoice_calculator import compose_invoice
from timebill.errors import (
    DuplicateInvoiceNumberError,
    ImmutableTimecardError,
    InvalidStatusTransitionError,
    NotFoundError,
    PersistenceError,
)

from .conftest import TEST_USER_ID


def _draft(client_record, project, number="PP001", timecard_ids=()):
    return schemas.InvoiceDraft(
        invoice_number=number,
        company_name="Ana Popescu PFA",
        client_id=client_record.id,
        client_name=client_record.name,
        project_id=project.id,
        project_name=project.name,
        date=date(2025, 3, 31),
        due_date=date(2025, 4, 30),
        currency="EUR",
        items=[schemas.LineItem(
            description="Project Phoenix: Consultancy services for March 2025",
            quantity=Decimal("2"), unit="days", rate=Decimal("500"), amount=Decimal("1000"),
        )],
        subtotal=Decimal("1000"),
        vat_amount=Decimal("190"),
        vat_rate=Decimal("0.19"),
        total=Decimal("1190"),
        total_ron=Decimal("5914.3"),
        exchange_rate=Decimal("4.97"),
        exchange_rate_date=date(2025, 3, 14),
        billed_timecard_ids=list(timecard_ids),
    )


def _status(db, timecard):
    db.expire_all()
    return crud.get_timecard(db, timecard.id, TEST_USER_ID).status


def test_save_invoice_marks_timecards_billed(db, client_record, project, add_timecard):
    first = add_timecard(date(2025, 3, 3), "8")
    second = add_timecard(date(2025, 3, 4), "8")

    invoice = crud.save_invoice(db, _draft(client_record, project, timecard_ids=[first.id, second.id]), TEST_USER_ID)

    assert invoice.status == "Created"
    assert invoice.billed_timecard_ids == [first.id, second.id]
    assert [item.amount for item in invoice.items] == [Decimal("1000")]
    assert invoice.vat_rate == Decimal("0.19")
    for timecard in (first, second):
        db.refresh(timecard)
        assert timecard.status == "Billed"
        assert timecard.invoice_id == invoice.id


def test_save_invoice_keeps_unset_vat_rate(db, client_record, project):
    draft = _draft(client_record, project).model_copy(update={"vat_rate": None, "vat_amount": Decimal("0")})
    invoice = crud.save_invoice(db, draft, TEST_USER_ID)
    assert invoice.vat_rate is None


def test_missing_timecard_writes_nothing(db, client_record, project, add_timecard):
    timecard = add_timecard(date(2025, 3, 3), "8")

    with pytest.raises(PersistenceError):
        crud.save_invoice(db, _draft(client_record, project, timecard_ids=[timecard.id, "gone"]), TEST_USER_ID)

    assert crud.get_invoices_by_owner(db, TEST_USER_ID) == []
    assert _status(db, timecard) == "Unbilled"


def test_billed_timecard_cannot_be_billed_twice(db, client_record, project, add_timecard):
    timecard = add_timecard(date(2025, 3, 3), "8")
    crud.save_invoice(db, _draft(client_record, project, timecard_ids=[timecard.id]), TEST_USER_ID)

    with pytest.raises(PersistenceError):
        crud.save_invoice(db, _draft(client_record, project, "PP002", timecard_ids=[timecard.id]), TEST_USER_ID)

    assert [inv.invoice_number for inv in crud.get_invoices_by_owner(db, TEST_USER_ID)] == ["PP001"]


def test_failed_commit_rolls_back_everything(db, client_record, project, add_timecard, monkeypatch):
    timecard = add_timecard(date(2025, 3, 3), "8")

    def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "commit", failing_commit)
    with pytest.raises(PersistenceError):
        crud.save_invoice(db, _draft(client_record, project, timecard_ids=[timecard.id]), TEST_USER_ID)
    monkeypatch.undo()

    assert db.query(models.Invoice).count() == 0
    assert db.query(models.LineItem).count() == 0
    assert _status(db, timecard) == "Unbilled"


def test_duplicate_invoice_number_is_rejected(db, client_record, project, add_timecard):
    crud.save_invoice(db, _draft(client_record, project), TEST_USER_ID)
    timecard = add_timecard(date(2025, 3, 3), "8")

    with pytest.raises(DuplicateInvoiceNumberError) as excinfo:
        crud.save_invoice(db, _draft(client_record, project, timecard_ids=[timecard.id]), TEST_USER_ID)

    assert excinfo.value.invoice_number == "PP001"
    assert db.query(models.Invoice).count() == 1
    assert _status(db, timecard) == "Unbilled"


def test_same_number_for_another_user_is_allowed(db, client_record, project):
    crud.save_invoice(db, _draft(client_record, project), TEST_USER_ID)
    crud.save_invoice(db, _draft(client_record, project), "user-2")
    assert db.query(models.Invoice).count() == 2


def test_status_moves_forward_one_step(db, client_record, project):
    invoice = crud.save_invoice(db, _draft(client_record, project), TEST_USER_ID)

    with pytest.raises(InvalidStatusTransitionError):
        crud.update_invoice_status(db, invoice.id, TEST_USER_ID, schemas.InvoiceStatus.PAID)

    assert crud.update_invoice_status(db, invoice.id, TEST_USER_ID, schemas.InvoiceStatus.SENT).status == "Sent"
    assert crud.update_invoice_status(db, invoice.id, TEST_USER_ID, schemas.InvoiceStatus.PAID).status == "Paid"

    with pytest.raises(InvalidStatusTransitionError):
        crud.update_invoice_status(db, invoice.id, TEST_USER_ID, schemas.InvoiceStatus.SENT)


def test_status_of_unknown_invoice(db):
    with pytest.raises(NotFoundError):
        crud.update_invoice_status(db, "nope", TEST_USER_ID, schemas.InvoiceStatus.SENT)


def test_billed_timecard_is_immutable(db, client_record, project, add_timecard):
    timecard = add_timecard(date(2025, 3, 3), "8")
    crud.save_invoice(db, _draft(client_record, project, timecard_ids=[timecard.id]), TEST_USER_ID)

    update = schemas.TimecardCreate(project_id=project.id, start_date=date(2025, 3, 3), hours=Decimal("4"))
    with pytest.raises(ImmutableTimecardError):
        crud.update_timecard(db, timecard.id, update, TEST_USER_ID)
    with pytest.raises(ImmutableTimecardError):
        crud.delete_timecard(db, timecard.id, TEST_USER_ID)


def test_unbilled_timecard_can_be_edited(db, project, add_timecard):
    timecard = add_timecard(date(2025, 3, 3), "8")
    update = schemas.TimecardCreate(project_id=project.id, start_date=date(2025, 3, 5), hours=Decimal("6"))
    updated = crud.update_timecard(db, timecard.id, update, TEST_USER_ID)
    assert updated.hours == Decimal("6")
    assert updated.end_date == date(2025, 3, 5)


def test_timecard_needs_existing_project(db):
    timecard = schemas.TimecardCreate(project_id="missing", start_date=date(2025, 3, 3), hours=Decimal("8"))
    with pytest.raises(NotFoundError):
        crud.create_timecard(db, timecard, TEST_USER_ID)


def test_deleting_invoice_keeps_timecards_billed(db, client_record, project, add_timecard):
    timecard = add_timecard(date(2025, 3, 3), "8")
    invoice = crud.save_invoice(db, _draft(client_record, project, timecard_ids=[timecard.id]), TEST_USER_ID)
    invoice_id = invoice.id

    assert crud.delete_invoice(db, invoice_id, TEST_USER_ID) is not None
    assert crud.get_invoice_by_id(db, invoice_id, TEST_USER_ID) is None
    assert db.query(models.LineItem).count() == 0
    db.refresh(timecard)
    assert timecard.status == "Billed"
    assert timecard.invoice_id == invoice_id


def test_delete_client_cascades(db, client_record, project, add_timecard):
    timecard = add_timecard(date(2025, 3, 3), "8")
    crud.save_invoice(db, _draft(client_record, project, timecard_ids=[timecard.id]), TEST_USER_ID)

    assert crud.delete_client(db, client_record.id, TEST_USER_ID) is True

    assert db.query(models.Client).count() == 0
    assert db.query(models.Project).count() == 0
    assert db.query(models.Invoice).count() == 0
    assert db.query(models.Timecard).count() == 0


def test_delete_project_keeps_history_by_default(db, client_record, project, add_timecard):
    timecard = add_timecard(date(2025, 3, 3), "8")
    crud.save_invoice(db, _draft(client_record, project, timecard_ids=[timecard.id]), TEST_USER_ID)

    assert crud.delete_project(db, project.id, TEST_USER_ID, cascade=False) is True

    assert db.query(models.Project).count() == 0
    assert db.query(models.Invoice).count() == 1
    assert db.query(models.Timecard).count() == 1


def test_delete_project_with_cascade(db, client_record, project, add_timecard):
    timecard = add_timecard(date(2025, 3, 3), "8")
    crud.save_invoice(db, _draft(client_record, project, timecard_ids=[timecard.id]), TEST_USER_ID)

    assert crud.delete_project(db, project.id, TEST_USER_ID, cascade=True) is True

    assert db.query(models.Invoice).count() == 0
    assert db.query(models.Timecard).count() == 0
    assert db.query(models.Client).count() == 1


def test_renaming_client_updates_projects(db, client_record, project, add_timecard):
    timecard = add_timecard(date(2025, 3, 3), "8")
    renamed = schemas.ClientCreate(name="Acme Group", address="1 Main St", tax_id="DE999")
    crud.update_client(db, client_record.id, renamed, TEST_USER_ID)

    db.expire_all()
    assert crud.get_project(db, project.id, TEST_USER_ID).client_name == "Acme Group"
    assert crud.get_timecard(db, timecard.id, TEST_USER_ID).client_name == "Acme Group"


def test_records_are_scoped_to_owner(db, client_record):
    assert crud.get_client(db, client_record.id, "user-2") is None
    assert crud.get_clients_by_owner(db, "user-2") == []
    assert crud.delete_client(db, client_record.id, "user-2") is False


def test_first_sign_in_creates_default_profile(db):
    profile = crud.ensure_company_profile(db, "new-user", "new@example.com")
    assert profile.name == "My Company"
    assert profile.email == "new@example.com"
    assert profile.vat_rate == Decimal("0.19")
    assert crud.ensure_company_profile(db, "new-user").id == profile.id


def test_profile_update_merges(db, company):
    crud.create_or_update_company_profile(db, schemas.CompanyProfileUpdate(phone="+40 700 000 000"), TEST_USER_ID)
    profile = crud.get_company_profile(db, TEST_USER_ID)
    assert profile.phone == "+40 700 000 000"
    assert profile.name == "Ana Popescu PFA"


def test_hours_keep_every_decimal(db, add_timecard):
    timecard = add_timecard(date(2025, 3, 3), "7.125")
    db.expire_all()
    assert crud.get_timecard(db, timecard.id, TEST_USER_ID).hours == Decimal("7.125")


@pytest.mark.asyncio
async def test_saved_invoice_matches_preview(db, company, client_record):
    async def fetch(currency):
        return schemas.ExchangeRate(rate=Decimal("4.97"), date=date(2025, 3, 14))

    six_hour_days = crud.create_project(
        db,
        project=schemas.ProjectCreate(
            name="Project Phoenix", client_id=client_record.id, currency="EUR",
            rate=Decimal("500"), rate_type=schemas.RateType.DAILY, hours_per_day=Decimal("6"),
        ),
        owner_id=TEST_USER_ID,
    )
    crud.create_timecard(
        db, schemas.TimecardCreate(project_id=six_hour_days.id, start_date=date(2025, 3, 3), hours=Decimal("10")), TEST_USER_ID,
    )
    request = schemas.InvoiceRequest(
        client_id=client_record.id, project_id=six_hour_days.id, month=3, year=2025, select_all=True,
    )
    preview = await compose_invoice(
        request, company=company, client=client_record, project=six_hour_days,
        timecards=crud.get_timecards_by_owner(db, TEST_USER_ID), fetch_rate=fetch,
    )

    invoice_id = crud.save_invoice(db, preview.invoice, TEST_USER_ID).id
    db.expire_all()
    saved = crud.get_invoice_by_id(db, invoice_id, TEST_USER_ID)

    item = saved.items[0]
    assert item.quantity == Decimal("10") / Decimal("6")
    assert item.amount == item.quantity * item.rate
    assert (item.quantity, item.amount) == (preview.invoice.items[0].quantity, preview.invoice.items[0].amount)
    assert saved.total == preview.invoice.total
    assert saved.total_ron == preview.invoice.total_ron


def test_delete_client_removes_timecards_of_deleted_projects(db, client_record, project, add_timecard):
    add_timecard(date(2025, 3, 3), "8")
    assert crud.delete_project(db, project.id, TEST_USER_ID, cascade=False) is True
    assert db.query(models.Timecard).count() == 1

    assert crud.delete_client(db, client_record.id, TEST_USER_ID) is True
    assert db.query(models.Timecard).count() == 0


def test_timecards_follow_a_project_to_another_client(db, client_record, project, add_timecard):
    other = crud.create_client(
        db, client=schemas.ClientCreate(name="Globex", address="2 Side St", tax_id="FR111"), owner_id=TEST_USER_ID,
    )
    timecard = add_timecard(date(2025, 3, 3), "8")
    moved = schemas.ProjectCreate(
        name="Project Phoenix", client_id=other.id, rate=Decimal("500"), rate_type=schemas.RateType.DAILY,
    )
    crud.update_project(db, project.id, moved, TEST_USER_ID)

    assert crud.delete_client(db, client_record.id, TEST_USER_ID) is True
    db.expire_all()
    assert crud.get_timecard(db, timecard.id, TEST_USER_ID).client_name == "Globex"
