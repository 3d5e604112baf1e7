import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from timebill import config, crud, exchange_rates, models, schemas, supabase_client
from timebill.billing import unbilled_timecards_for_period
from timebill.database import engine, get_db
from timebill.errors import (
    DuplicateInvoiceNumberError,
    ImmutableTimecardError,
    InvalidStatusTransitionError,
    NotFoundError,
    PersistenceError,
)
from timebill.invoice_calculator import compose_invoice
from timebill.logging_config import setup_logging
from timebill.pdf_generator import invoice_filename, render_invoice_pdf

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    supabase_client.init_supabase_client()
    yield


# Create the tables on startup
models.Base.metadata.create_all(bind=engine)

os.makedirs(config.STATIC_DIR, exist_ok=True)

app = FastAPI(title="timebill", lifespan=lifespan)


@app.middleware("http")
async def refresh_token_middleware(request: Request, call_next):
    """
    Resolves the user for every request. An expired access token is refreshed
    and the new cookies are set on the response; a dead session clears them.
    """
    clear_cookies = False
    try:
        request.state.user = await supabase_client.get_current_user(request)
    except supabase_client.SessionExpiredError:
        request.state.user = None
        clear_cookies = True

    response = await call_next(request)

    if clear_cookies:
        response.delete_cookie("access_token")
        response.delete_cookie("refresh_token")
    elif request.state.user and request.state.user.new_session:
        new_session = request.state.user.new_session
        set_auth_cookies(response, new_session.access_token, new_session.refresh_token)
    return response


def set_auth_cookies(response: Response, access_token: str, refresh_token: str):
    """Sets the auth cookies on a response."""
    is_production = (config.APP_ENV == "production")

    # Plain HTTP in development needs `secure=False`
    samesite_policy = "strict" if is_production else "lax"

    response.set_cookie(
        key="access_token", value=access_token, httponly=True, samesite=samesite_policy, secure=is_production
    )
    response.set_cookie(
        key="refresh_token", value=refresh_token, httponly=True, samesite=samesite_policy, secure=is_production
    )


def get_current_user(request: Request) -> supabase_client.User:
    """Dependency returning the signed-in user, or 401."""
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not signed in")
    return user


def _not_found(what: str):
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")


# --- Auth ---

class AuthTokens(BaseModel):
    access_token: str
    refresh_token: str


@app.post("/auth/callback")
async def auth_callback(tokens: AuthTokens, db: Session = Depends(get_db)):
    """Receives the tokens from the client-side Google sign-in."""
    user = await supabase_client.get_user_from_token(tokens.access_token)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid access token")

    crud.ensure_company_profile(db, user_id=user.id, email=user.email)
    response = JSONResponse(content={"user_id": user.id, "email": user.email})
    set_auth_cookies(response, tokens.access_token, tokens.refresh_token)
    return response


@app.get("/logout")
async def logout():
    response = RedirectResponse(url="/")
    response.delete_cookie("access_token")
    response.delete_cookie("refresh_token")
    return response


# --- Company Profile ---

@app.get("/profile", response_model=schemas.CompanyProfile)
async def get_profile(db: Session = Depends(get_db), user: supabase_client.User = Depends(get_current_user)):
    return crud.ensure_company_profile(db, user_id=user.id, email=user.email)


@app.put("/profile", response_model=schemas.CompanyProfile)
async def update_profile(
    profile: schemas.CompanyProfileUpdate,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    return crud.create_or_update_company_profile(db, profile=profile, user_id=user.id)


@app.post("/profile/logo", response_model=schemas.CompanyProfile)
async def upload_logo(
    logo: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    # Stored permanently under the user's id
    file_extension = os.path.splitext(logo.filename or "")[1]
    logo_filename = f"logo_{user.id}{file_extension}"
    with open(os.path.join(config.STATIC_DIR, logo_filename), "wb") as f:
        f.write(await logo.read())
    return crud.create_or_update_company_profile(
        db, profile=schemas.CompanyProfileUpdate(), user_id=user.id, logo_filename=logo_filename
    )


# --- Clients ---

@app.get("/clients", response_model=List[schemas.Client])
async def list_clients(db: Session = Depends(get_db), user: supabase_client.User = Depends(get_current_user)):
    return crud.get_clients_by_owner(db, owner_id=user.id, limit=1000)


@app.post("/clients", response_model=schemas.Client, status_code=status.HTTP_201_CREATED)
async def create_client(
    client: schemas.ClientCreate,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    return crud.create_client(db, client=client, owner_id=user.id)


@app.put("/clients/{client_id}", response_model=schemas.Client)
async def update_client(
    client_id: str,
    client: schemas.ClientCreate,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    updated_client = crud.update_client(db, client_id=client_id, client_data=client, owner_id=user.id)
    if not updated_client:
        raise _not_found("Client")
    return updated_client


@app.delete("/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_client(client_id: str, db: Session = Depends(get_db), user: supabase_client.User = Depends(get_current_user)):
    if not crud.delete_client(db, client_id=client_id, owner_id=user.id):
        raise _not_found("Client")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Projects ---

@app.get("/projects", response_model=List[schemas.Project])
async def list_projects(
    client_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    return crud.get_projects_by_owner(db, owner_id=user.id, client_id=client_id)


@app.post("/projects", response_model=schemas.Project, status_code=status.HTTP_201_CREATED)
async def create_project(
    project: schemas.ProjectCreate,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    try:
        return crud.create_project(db, project=project, owner_id=user.id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@app.put("/projects/{project_id}", response_model=schemas.Project)
async def update_project(
    project_id: str,
    project: schemas.ProjectCreate,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    try:
        updated_project = crud.update_project(db, project_id=project_id, project_data=project, owner_id=user.id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if not updated_project:
        raise _not_found("Project")
    return updated_project


@app.delete("/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    project_id: str,
    cascade: Optional[bool] = None,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    if not crud.delete_project(db, project_id=project_id, owner_id=user.id, cascade=cascade):
        raise _not_found("Project")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Timecards ---

@app.get("/timecards", response_model=List[schemas.Timecard])
async def list_timecards(
    project_id: Optional[str] = None,
    timecard_status: Optional[schemas.TimecardStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    return crud.get_timecards_by_owner(db, owner_id=user.id, project_id=project_id, status=timecard_status)


@app.get("/timecards/unbilled", response_model=List[schemas.Timecard])
async def list_unbilled_timecards(
    project_id: str,
    month: int,
    year: int,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    """Candidates for a timecard-mode invoice of one project and service month."""
    if not 1 <= month <= 12:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="month must be 1-12")
    timecards = crud.get_timecards_by_owner(db, owner_id=user.id, project_id=project_id, status=schemas.TimecardStatus.UNBILLED)
    return unbilled_timecards_for_period(timecards, project_id, month, year)


@app.post("/timecards", response_model=schemas.Timecard, status_code=status.HTTP_201_CREATED)
async def create_timecard(
    timecard: schemas.TimecardCreate,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    try:
        return crud.create_timecard(db, timecard=timecard, owner_id=user.id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@app.put("/timecards/{timecard_id}", response_model=schemas.Timecard)
async def update_timecard(
    timecard_id: str,
    timecard: schemas.TimecardCreate,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    try:
        return crud.update_timecard(db, timecard_id=timecard_id, timecard_data=timecard, owner_id=user.id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ImmutableTimecardError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.delete("/timecards/{timecard_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_timecard(timecard_id: str, db: Session = Depends(get_db), user: supabase_client.User = Depends(get_current_user)):
    try:
        crud.delete_timecard(db, timecard_id=timecard_id, owner_id=user.id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ImmutableTimecardError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Exchange rates ---

@app.get("/exchange-rate/{currency}", response_model=schemas.ExchangeRate)
async def get_exchange_rate(currency: str, user: supabase_client.User = Depends(get_current_user)):
    """Manual refresh of the rate shown in the invoice dialog."""
    return await exchange_rates.get_exchange_rate(currency)


# --- Invoices ---

async def _compose(request: schemas.InvoiceRequest, db: Session, user: supabase_client.User) -> schemas.InvoicePreview:
    """Recomputes the invoice from the current state of the store."""
    client = crud.get_client(db, client_id=request.client_id, owner_id=user.id)
    if not client:
        raise _not_found("Client")
    project = crud.get_project(db, project_id=request.project_id, owner_id=user.id)
    if not project:
        raise _not_found("Project")

    return await compose_invoice(
        request,
        company=crud.get_company_profile(db, user_id=user.id),
        client=client,
        project=project,
        timecards=crud.get_timecards_by_owner(
            db, owner_id=user.id, project_id=project.id, status=schemas.TimecardStatus.UNBILLED
        ),
        invoices=crud.get_invoice_history(db, owner_id=user.id),
    )


@app.post("/invoices/preview", response_model=schemas.InvoicePreview, response_model_exclude_none=True)
async def preview_invoice(
    request: schemas.InvoiceRequest,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    return await _compose(request, db, user)


@app.post("/invoices", response_model=schemas.Invoice, response_model_exclude_none=True,
          status_code=status.HTTP_201_CREATED)
async def create_invoice(
    request: schemas.InvoiceRequest,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    preview = await _compose(request, db, user)
    if preview.invoice is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=preview.reason or "Invoice cannot be generated",
        )

    try:
        return crud.save_invoice(db, draft=preview.invoice, owner_id=user.id)
    except DuplicateInvoiceNumberError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.get("/invoices", response_model=List[schemas.Invoice], response_model_exclude_none=True)
async def list_invoices(db: Session = Depends(get_db), user: supabase_client.User = Depends(get_current_user)):
    return crud.get_invoices_by_owner(db, owner_id=user.id, limit=1000)


@app.get("/invoices/{invoice_id}", response_model=schemas.Invoice, response_model_exclude_none=True)
async def get_invoice(invoice_id: str, db: Session = Depends(get_db), user: supabase_client.User = Depends(get_current_user)):
    invoice = crud.get_invoice_by_id(db, invoice_id=invoice_id, owner_id=user.id)
    if not invoice:
        raise _not_found("Invoice")
    return invoice


@app.post("/invoices/{invoice_id}/status", response_model=schemas.Invoice, response_model_exclude_none=True)
async def update_invoice_status(
    invoice_id: str,
    update: schemas.InvoiceStatusUpdate,
    db: Session = Depends(get_db),
    user: supabase_client.User = Depends(get_current_user),
):
    try:
        return crud.update_invoice_status(db, invoice_id=invoice_id, owner_id=user.id, new_status=update.status)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.delete("/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_invoice(invoice_id: str, db: Session = Depends(get_db), user: supabase_client.User = Depends(get_current_user)):
    if not crud.delete_invoice(db, invoice_id=invoice_id, owner_id=user.id):
        raise _not_found("Invoice")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/invoices/{invoice_id}/pdf")
async def download_invoice_pdf(invoice_id: str, db: Session = Depends(get_db), user: supabase_client.User = Depends(get_current_user)):
    db_invoice = crud.get_invoice_by_id(db, invoice_id=invoice_id, owner_id=user.id)
    if not db_invoice:
        raise _not_found("Invoice")

    company_profile = crud.get_company_profile(db, user_id=user.id)
    absolute_logo_path = None
    if company_profile and company_profile.logo_path:
        absolute_logo_path = os.path.join(config.STATIC_DIR, company_profile.logo_path)

    # ReportLab is synchronous; render off the event loop
    pdf_buffer = await run_in_threadpool(render_invoice_pdf, schemas.Invoice.model_validate(db_invoice), absolute_logo_path)
    return Response(
        content=pdf_buffer.getvalue(),
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename={invoice_filename(db_invoice.invoice_number)}"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("timebill.main:app", host="127.0.0.1", port=8001, reload=True)
