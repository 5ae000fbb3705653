# FILE: app/api/router.py
from fastapi import APIRouter
from app.api import (
    routes_billing,
    routes_billing_advances,
)

api_router = APIRouter()

# Billing ledger
api_router.include_router(routes_billing.router)
api_router.include_router(routes_billing_advances.router)
