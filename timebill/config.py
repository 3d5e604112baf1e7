import os
from decimal import Decimal

from dotenv import load_dotenv

# Project root (the directory holding pyproject.toml and .env)
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
dotenv_path = os.path.join(BASE_DIR, '.env')

load_dotenv(dotenv_path=dotenv_path)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Runtime environment. Defaults to "development".
APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(BASE_DIR, 'timebill.db')}")

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY")

# Every invoice also reports its total in this currency.
HOME_CURRENCY = os.getenv("HOME_CURRENCY", "RON").upper()
EXCHANGE_RATE_FEED_URL = os.getenv("EXCHANGE_RATE_FEED_URL", "https://www.bnr.ro/nbrfxrates.xml")
EXCHANGE_RATE_TIMEOUT = float(os.getenv("EXCHANGE_RATE_TIMEOUT", "10"))

# "project": currency, VAT, fixed rate and numbering come from the project.
# "client": the older flow where the client carries them.
BILLING_TERMS_OWNER = os.getenv("BILLING_TERMS_OWNER", "project").lower()

# Deleting a project also deletes its invoices and timecards when enabled.
CASCADE_PROJECT_DELETE = _env_bool("CASCADE_PROJECT_DELETE", False)

# Placeholder VAT rate written to the company profile on first sign-in.
DEFAULT_VAT_RATE = Decimal(os.getenv("DEFAULT_VAT_RATE", "0.19"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "EUR").upper()
HOURS_PER_DAY = Decimal("8")

STATIC_DIR = os.path.join(BASE_DIR, "static")
