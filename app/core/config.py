# app/core/config.py
import os
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel
from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Invoice & Advance Ledger")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- Database ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "ledger_user")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "invoice_ledger")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")

    # DATABASE_URL wins over the MYSQL_* pieces (tests use sqlite)
    SQLALCHEMY_DATABASE_URI: str = os.getenv("DATABASE_URL") or (
        f"mysql+{DB_DRIVER}://{quote_plus(MYSQL_USER)}:{quote_plus(MYSQL_PASSWORD)}"
        f"@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}")

    # ---------- Logging ----------
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # ---------- Invoice numbering ----------
    INVOICE_NUMBER_PREFIX: str = os.getenv("INVOICE_NUMBER_PREFIX", "INV-")
    # month | year | none
    INVOICE_NUMBER_RESET: str = os.getenv("INVOICE_NUMBER_RESET",
                                          "month").lower()
    INVOICE_NUMBER_PADDING: int = int(os.getenv("INVOICE_NUMBER_PADDING", "6"))

    # ---------- Billing flags ----------
    BILLING_DEFAULT_TAX: Decimal = Decimal(
        os.getenv("BILLING_DEFAULT_TAX", "0") or "0")
    # Payments / advance adjustments are draft-only unless this is set
    BILLING_ALLOW_PAYMENTS_ON_FINALIZED: bool = _flag(
        "BILLING_ALLOW_PAYMENTS_ON_FINALIZED")
    INVOICE_LIST_LIMIT: int = int(os.getenv("INVOICE_LIST_LIMIT", "500"))

    # ---------- External charge sources ----------
    BED_STAY_SOURCE_URL: Optional[str] = os.getenv("BED_STAY_SOURCE_URL")
    OT_COSTING_SOURCE_URL: Optional[str] = os.getenv("OT_COSTING_SOURCE_URL")
    ORDERS_SOURCE_URL: Optional[str] = os.getenv("ORDERS_SOURCE_URL")
    SOURCE_API_TOKEN: Optional[str] = os.getenv("SOURCE_API_TOKEN")
    SOURCE_TIMEOUT_SECONDS: float = float(
        os.getenv("SOURCE_TIMEOUT_SECONDS", "15"))


settings = Settings()
