import os
from datetime import date
from decimal import Decimal

# In-memory database for anything that imports timebill.database
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from timebill import crud, schemas, supabase_client
from timebill.database import Base, get_db
from timebill.main import app, get_current_user

TEST_USER_ID = "user-1"
TEST_USER_EMAIL = "ana@example.com"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def user():
    return supabase_client.User(id=TEST_USER_ID, email=TEST_USER_EMAIL, token="token")


@pytest.fixture()
def api(db, user):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: user
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def company(db):
    return crud.create_or_update_company_profile(
        db,
        profile=schemas.CompanyProfileUpdate(
            name="Ana Popescu PFA",
            address="Str. Lunga 1, Brasov",
            tax_id="RO123456",
            iban="RO49AAAA1B31007593840000",
            bank_name="Banca Transilvania",
            swift="BTRLRO22",
            vat_rate=Decimal("0.19"),
        ),
        user_id=TEST_USER_ID,
    )


@pytest.fixture()
def client_record(db):
    return crud.create_client(
        db,
        client=schemas.ClientCreate(name="Acme Corp", address="1 Main St", tax_id="DE999", currency="EUR"),
        owner_id=TEST_USER_ID,
    )


@pytest.fixture()
def project(db, client_record):
    return crud.create_project(
        db,
        project=schemas.ProjectCreate(
            name="Project Phoenix",
            client_id=client_record.id,
            currency="EUR",
            has_vat=True,
            rate=Decimal("500"),
            rate_type=schemas.RateType.DAILY,
        ),
        owner_id=TEST_USER_ID,
    )


@pytest.fixture()
def add_timecard(db, project):
    def _add(start: date, hours: str, project_id: str = None):
        return crud.create_timecard(
            db,
            timecard=schemas.TimecardCreate(
                project_id=project_id or project.id, start_date=start, hours=Decimal(hours)
            ),
            owner_id=TEST_USER_ID,
        )
    return _add


@pytest.fixture()
def fixed_rate(monkeypatch):
    """Replaces the BNR fetch with a fixed EUR rate and counts the calls."""
    from timebill import exchange_rates

    calls = []

    async def fake_get_exchange_rate(currency, **kwargs):
        calls.append(currency)
        return schemas.ExchangeRate(rate=Decimal("4.97"), date=date(2025, 3, 14))

    monkeypatch.setattr(exchange_rates, "get_exchange_rate", fake_get_exchange_rate)
    return calls
