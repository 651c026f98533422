from fastapi import APIRouter

from loan_intake.api.v1.routers import (
    admin,
    applications,
    documents,
    health,
    lender_submissions,
)

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(applications.router)
api_router.include_router(documents.router)
api_router.include_router(lender_submissions.router)
api_router.include_router(admin.router)

__all__ = ["api_router"]
