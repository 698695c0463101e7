"""Main API router aggregating all endpoint routers."""

from fastapi import APIRouter

from app.api.account import router as account_router

api_router = APIRouter(prefix="/api")

api_router.include_router(account_router)
