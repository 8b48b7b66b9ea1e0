from fastapi import APIRouter
from boxoffice.api.v1 import admin_payments, health, payment_webhook, tickets

router = APIRouter()
router.include_router(health.router, tags=["health"])
router.include_router(payment_webhook.router, tags=["payments"])
router.include_router(tickets.router, tags=["tickets"])

# Admin
router.include_router(admin_payments.router, tags=["admin"])
