"""API v1 root router."""

from __future__ import annotations

from fastapi import APIRouter

from app.api.v1.blocks import router as blocks_router


router = APIRouter()
router.include_router(blocks_router, prefix="/blocks", tags=["blocks"])
