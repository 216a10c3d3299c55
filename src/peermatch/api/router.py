from __future__ import annotations

from fastapi import APIRouter

from peermatch.api.routes import match

api_router = APIRouter()

api_router.include_router(match.router)
