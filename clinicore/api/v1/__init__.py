"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import reports, reminders

api_router = APIRouter()

api_router.include_router(
    reports.router,
    prefix="/reports",
    tags=["reports"]
)

api_router.include_router(
    reminders.router,
    prefix="/reminders",
    tags=["reminders"]
)
