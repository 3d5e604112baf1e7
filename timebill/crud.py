import logging
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from . import config, models, schemas
from .errors import (
    DuplicateInvoiceNumberError,
    ImmutableTimecardError,
    InvalidStatusTransitionError,
    NotFoundError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

# Invoice status only moves forward, one step at a time.
NEXT_INVOICE_STATUS = {
    schemas.InvoiceStatus.CREATED: schemas.InvoiceStatus.SENT,
    schemas.InvoiceStatus.SENT: schemas.InvoiceStatus.PAID,
}


def _commit(db: Session, action: str):
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Store rejected %s: %s", action, e)
        raise PersistenceError(f"Could not {action}") from e


# --- Company Profile ---

def get_company_profile(db: Session, user_id: str):
    return db.query(models.CompanyProfile).filter(models.CompanyProfile.owner_id == user_id).first()


def create_or_update_company_profile(db: Session, profile: schemas.CompanyProfileUpdate, user_id: str, logo_filename: str = None):
    db_profile = get_company_profile(db, user_id)
    if db_profile:
        # Merge: fields left empty keep their stored value
        for var, value in profile.model_dump().items():
            if value is not None:
                setattr(db_profile, var, value)
        if logo_filename:
            db_profile.logo_path = logo_filename
    else:
        db_profile = models.CompanyProfile(**profile.model_dump(), owner_id=user_id, logo_path=logo_filename)
        if db_profile.vat_rate is None:
            db_profile.vat_rate = config.DEFAULT_VAT_RATE
        db.add(db_profile)
    _commit(db, "save company profile")
    db.refresh(db_profile)
    return db_profile


def ensure_company_profile(db: Session, user_id: str, email: str = None):
    """Creates the placeholder profile on first sign-in; the user fills it in later."""
    db_profile = get_company_profile(db, user_id)
    if db_profile:
        return db_profile
    placeholder = schemas.CompanyProfileUpdate(
        name="My Company",
        address="Company address",
        tax_id="Company VAT number",
        email=email,
        vat_rate=config.DEFAULT_VAT_RATE,
    )
    logger.info("Creating default company profile for user %s", user_id)
    return create_or_update_company_profile(db, profile=placeholder, user_id=user_id)


# --- Clients ---

def get_client(db: Session, client_id: str, owner_id: str):
    return db.query(models.Client).filter(models.Client.id == client_id, models.Client.owner_id == owner_id).first()


def get_clients_by_owner(db: Session, owner_id: str, skip: int = 0, limit: int = 100):
    return (
        db.query(models.Client)
        .filter(models.Client.owner_id == owner_id)
        .order_by(models.Client.order, models.Client.name)
        .offset(skip).limit(limit).all()
    )


def create_client(db: Session, client: schemas.ClientCreate, owner_id: str):
    db_client = models.Client(**client.model_dump(), owner_id=owner_id)
    db.add(db_client)
    _commit(db, "create client")
    db.refresh(db_client)
    return db_client


def update_client(db: Session, client_id: str, client_data: schemas.ClientCreate, owner_id: str):
    db_client = get_client(db, client_id=client_id, owner_id=owner_id)
    if not db_client:
        return None

    update_data = client_data.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(db_client, key, value)

    # Keep the denormalized client name on projects and timecards in step
    if "name" in update_data:
        projects = db.query(models.Project).filter(models.Project.client_id == client_id, models.Project.owner_id == owner_id).all()
        for project in projects:
            project.client_name = db_client.name
        project_ids = [p.id for p in projects]
        if project_ids:
            db.query(models.Timecard).filter(
                models.Timecard.project_id.in_(project_ids), models.Timecard.owner_id == owner_id
            ).update({models.Timecard.client_name: db_client.name}, synchronize_session=False)

    _commit(db, "update client")
    db.refresh(db_client)
    return db_client


def delete_client(db: Session, client_id: str, owner_id: str) -> bool:
    """Deletes the client with all of its projects, invoices and timecards in one commit."""
    db_client = get_client(db, client_id=client_id, owner_id=owner_id)
    if not db_client:
        return False

    project_ids = [
        pid for (pid,) in db.query(models.Project.id).filter(models.Project.client_id == client_id, models.Project.owner_id == owner_id)
    ]
    invoices = db.query(models.Invoice).filter(models.Invoice.client_id == client_id, models.Invoice.owner_id == owner_id).all()
    for invoice in invoices:
        db.delete(invoice)
    # Matched by client so timecards left behind by an earlier project delete go too
    db.query(models.Timecard).filter(
        models.Timecard.client_id == client_id, models.Timecard.owner_id == owner_id
    ).delete(synchronize_session=False)
    if project_ids:
        db.query(models.Project).filter(models.Project.id.in_(project_ids)).delete(synchronize_session=False)
    db.delete(db_client)
    _commit(db, "delete client")
    logger.info("Deleted client %s with %d projects and %d invoices", client_id, len(project_ids), len(invoices))
    return True


# --- Projects ---

def get_project(db: Session, project_id: str, owner_id: str):
    return db.query(models.Project).filter(models.Project.id == project_id, models.Project.owner_id == owner_id).first()


def get_projects_by_owner(db: Session, owner_id: str, client_id: str = None):
    query = db.query(models.Project).filter(models.Project.owner_id == owner_id)
    if client_id:
        query = query.filter(models.Project.client_id == client_id)
    return query.order_by(models.Project.order, models.Project.name).all()


def create_project(db: Session, project: schemas.ProjectCreate, owner_id: str):
    db_client = get_client(db, client_id=project.client_id, owner_id=owner_id)
    if not db_client:
        raise NotFoundError("Client not found")
    db_project = models.Project(**project.model_dump(), owner_id=owner_id, client_name=db_client.name)
    db.add(db_project)
    _commit(db, "create project")
    db.refresh(db_project)
    return db_project


def update_project(db: Session, project_id: str, project_data: schemas.ProjectCreate, owner_id: str):
    db_project = get_project(db, project_id=project_id, owner_id=owner_id)
    if not db_project:
        return None

    update_data = project_data.model_dump(exclude_unset=True)
    if "client_id" in update_data and update_data["client_id"] != db_project.client_id:
        db_client = get_client(db, client_id=update_data["client_id"], owner_id=owner_id)
        if not db_client:
            raise NotFoundError("Client not found")
        db_project.client_name = db_client.name
    for key, value in update_data.items():
        setattr(db_project, key, value)

    db.query(models.Timecard).filter(
        models.Timecard.project_id == project_id, models.Timecard.owner_id == owner_id
    ).update(
        {
            models.Timecard.project_name: db_project.name,
            models.Timecard.client_name: db_project.client_name,
            models.Timecard.client_id: db_project.client_id,
        },
        synchronize_session=False,
    )
    _commit(db, "update project")
    db.refresh(db_project)
    return db_project


def delete_project(db: Session, project_id: str, owner_id: str, cascade: bool = None) -> bool:
    """
    Deletes a project. With `cascade` its invoices and timecards go in the same
    commit; without it invoices keep their snapshot and the timecards stay behind.
    """
    if cascade is None:
        cascade = config.CASCADE_PROJECT_DELETE
    db_project = get_project(db, project_id=project_id, owner_id=owner_id)
    if not db_project:
        return False

    if cascade:
        for invoice in db.query(models.Invoice).filter(models.Invoice.project_id == project_id, models.Invoice.owner_id == owner_id):
            db.delete(invoice)
        db.query(models.Timecard).filter(
            models.Timecard.project_id == project_id, models.Timecard.owner_id == owner_id
        ).delete(synchronize_session=False)
    db.delete(db_project)
    _commit(db, "delete project")
    logger.info("Deleted project %s (cascade=%s)", project_id, cascade)
    return True


# --- Timecards ---

def get_timecard(db: Session, timecard_id: str, owner_id: str):
    return db.query(models.Timecard).filter(models.Timecard.id == timecard_id, models.Timecard.owner_id == owner_id).first()


def get_timecards_by_owner(db: Session, owner_id: str, project_id: str = None, status: schemas.TimecardStatus = None):
    query = db.query(models.Timecard).filter(models.Timecard.owner_id == owner_id)
    if project_id:
        query = query.filter(models.Timecard.project_id == project_id)
    if status:
        query = query.filter(models.Timecard.status == status.value)
    return query.order_by(models.Timecard.start_date.desc()).all()


def create_timecard(db: Session, timecard: schemas.TimecardCreate, owner_id: str):
    db_project = get_project(db, project_id=timecard.project_id, owner_id=owner_id)
    if not db_project:
        raise NotFoundError("Project not found")
    db_timecard = models.Timecard(
        **timecard.model_dump(),
        owner_id=owner_id,
        project_name=db_project.name,
        client_name=db_project.client_name,
        client_id=db_project.client_id,
        status=schemas.TimecardStatus.UNBILLED.value,
    )
    db.add(db_timecard)
    _commit(db, "log timecard")
    db.refresh(db_timecard)
    return db_timecard


def _editable_timecard(db: Session, timecard_id: str, owner_id: str):
    db_timecard = get_timecard(db, timecard_id=timecard_id, owner_id=owner_id)
    if not db_timecard:
        raise NotFoundError("Timecard not found")
    if db_timecard.status == schemas.TimecardStatus.BILLED.value:
        raise ImmutableTimecardError(f"Timecard {timecard_id} is billed by invoice {db_timecard.invoice_id}")
    return db_timecard


def update_timecard(db: Session, timecard_id: str, timecard_data: schemas.TimecardCreate, owner_id: str):
    db_timecard = _editable_timecard(db, timecard_id, owner_id)
    if timecard_data.project_id != db_timecard.project_id:
        db_project = get_project(db, project_id=timecard_data.project_id, owner_id=owner_id)
        if not db_project:
            raise NotFoundError("Project not found")
        db_timecard.project_name = db_project.name
        db_timecard.client_name = db_project.client_name
        db_timecard.client_id = db_project.client_id
    for key, value in timecard_data.model_dump().items():
        setattr(db_timecard, key, value)
    _commit(db, "update timecard")
    db.refresh(db_timecard)
    return db_timecard


def delete_timecard(db: Session, timecard_id: str, owner_id: str):
    db_timecard = _editable_timecard(db, timecard_id, owner_id)
    db.delete(db_timecard)
    _commit(db, "delete timecard")


# --- Invoices ---

def get_invoices_by_owner(db: Session, owner_id: str, skip: int = 0, limit: int = 100):
    return (
        db.query(models.Invoice)
        .options(selectinload(models.Invoice.items))
        .filter(models.Invoice.owner_id == owner_id)
        .order_by(models.Invoice.date.desc(), models.Invoice.invoice_number.desc())
        .offset(skip).limit(limit).all()
    )


def get_invoice_by_id(db: Session, invoice_id: str, owner_id: str):
    return (
        db.query(models.Invoice)
        .options(selectinload(models.Invoice.items))
        .filter(models.Invoice.id == invoice_id, models.Invoice.owner_id == owner_id)
        .first()
    )


def get_invoice_history(db: Session, owner_id: str) -> List[models.Invoice]:
    """All invoices of the user, used as numbering history."""
    return db.query(models.Invoice).filter(models.Invoice.owner_id == owner_id).all()


def save_invoice(db: Session, draft: schemas.InvoiceDraft, owner_id: str) -> models.Invoice:
    """
    Writes the invoice and flips every timecard it bills to Billed, as one unit.
    Either everything is committed or nothing is: on any failure the session is
    rolled back and PersistenceError is raised.
    """
    data = draft.model_dump(exclude={"id", "owner_id", "created_at", "items", "billed_timecard_ids", "status"})
    db_invoice = models.Invoice(
        **data,
        id=models.new_id(),
        owner_id=owner_id,
        status=schemas.InvoiceStatus.CREATED.value,
        billed_timecard_ids=list(draft.billed_timecard_ids),
    )
    for position, item in enumerate(draft.items):
        db_invoice.items.append(models.LineItem(position=position, **item.model_dump()))
    db.add(db_invoice)

    try:
        timecards = _timecards_to_bill(db, draft.billed_timecard_ids, owner_id)
        for timecard in timecards:
            timecard.status = schemas.TimecardStatus.BILLED.value
            timecard.invoice_id = db_invoice.id
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning("Invoice number %s already exists for user %s", draft.invoice_number, owner_id)
        raise DuplicateInvoiceNumberError(draft.invoice_number) from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Saving invoice %s failed: %s", draft.invoice_number, e)
        raise PersistenceError(f"Could not save invoice {draft.invoice_number}") from e
    except PersistenceError:
        db.rollback()
        raise

    db.refresh(db_invoice)
    logger.info("Saved invoice %s billing %d timecards", db_invoice.invoice_number, len(draft.billed_timecard_ids))
    return db_invoice


def _timecards_to_bill(db: Session, timecard_ids: Iterable[str], owner_id: str) -> List[models.Timecard]:
    timecard_ids = list(timecard_ids)
    if not timecard_ids:
        return []
    found = {
        tc.id: tc for tc in db.query(models.Timecard).filter(
            models.Timecard.id.in_(timecard_ids), models.Timecard.owner_id == owner_id
        )
    }
    missing = [tc_id for tc_id in timecard_ids if tc_id not in found]
    if missing:
        raise PersistenceError(f"Timecards not found: {', '.join(missing)}")
    billed = [tc_id for tc_id in timecard_ids if found[tc_id].status == schemas.TimecardStatus.BILLED.value]
    if billed:
        raise PersistenceError(f"Timecards already billed: {', '.join(billed)}")
    return [found[tc_id] for tc_id in timecard_ids]


def update_invoice_status(db: Session, invoice_id: str, owner_id: str, new_status: schemas.InvoiceStatus):
    db_invoice = get_invoice_by_id(db, invoice_id=invoice_id, owner_id=owner_id)
    if not db_invoice:
        raise NotFoundError("Invoice not found")

    current = schemas.InvoiceStatus(db_invoice.status)
    if NEXT_INVOICE_STATUS.get(current) != new_status:
        raise InvalidStatusTransitionError(current.value, new_status.value)

    db_invoice.status = new_status.value
    _commit(db, "update invoice status")
    db.refresh(db_invoice)
    logger.info("Invoice %s marked as %s", db_invoice.invoice_number, new_status.value)
    return db_invoice


def delete_invoice(db: Session, invoice_id: str, owner_id: str) -> Optional[models.Invoice]:
    """Irreversible. Timecards it billed stay Billed."""
    db_invoice = get_invoice_by_id(db, invoice_id=invoice_id, owner_id=owner_id)
    if not db_invoice:
        return None
    invoice_number = db_invoice.invoice_number
    db.delete(db_invoice)
    _commit(db, "delete invoice")
    logger.info("Deleted invoice %s", invoice_number)
    return db_invoice
