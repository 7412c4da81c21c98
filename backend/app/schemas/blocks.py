"""Schemas for the bitmap dataset query API (read-only).

Rows are served exactly as stored; nothing is derived or enriched here.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from tracker.core.state import BlockRecord


class BlockItem(BaseModel):
    """One dataset row."""
    block_number: int = Field(ge=0)
    inscription_id: Optional[str] = None
    sat_number: Optional[int] = None

    @classmethod
    def from_record(cls, record: BlockRecord) -> "BlockItem":
        return cls(
            block_number=record.block_number,
            inscription_id=record.inscription_id,
            sat_number=record.sat_number,
        )


class BlockListResponse(BaseModel):
    count: int = Field(ge=0, description="Number of items returned")
    items: list[BlockItem]


class HealthResponse(BaseModel):
    status: str
    dataset_entries: int = Field(ge=0)
