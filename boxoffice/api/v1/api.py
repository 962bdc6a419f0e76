"""
Main API Router
Aggregates all API endpoints for v1
"""

from fastapi import APIRouter
from boxoffice.api.v1.endpoints import bookings, jobs, payments

api_router = APIRouter()

api_router.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
