# backend/app/api/v1/router.py
from fastapi import APIRouter
from backend.app.api.v1.endpoints import mfa

api_router = APIRouter()
api_router.include_router(mfa.router, prefix="/mfa", tags=["mfa"])
