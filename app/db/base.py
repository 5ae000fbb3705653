# app/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All ledger tables inherit from this."""
    pass


# Import all models so metadata is complete for create_all()
from app.models import billing  # noqa: E402,F401
