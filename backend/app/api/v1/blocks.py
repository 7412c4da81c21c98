"""Bitmap block endpoints (read-only).

Serves the dataset CSV written by the tracker. Reads never block the
writer: a sort swaps the file atomically, so every read sees one complete
version of it.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from app.api.deps import enforce_rate_limit, enforce_read_only_access, get_store
from app.schemas.blocks import BlockItem, BlockListResponse
from tracker.core.store import DatasetStore


MAX_PAGE = 1000

router = APIRouter(
    dependencies=[
        Depends(enforce_read_only_access),
        Depends(enforce_rate_limit),
    ]
)


def _listing(records) -> BlockListResponse:
    items = [BlockItem.from_record(r) for r in records]
    return BlockListResponse(count=len(items), items=items)


# Fixed paths are declared before /{block_number} so they are matched first.

@router.get("/latest", response_model=BlockListResponse)
def get_latest_blocks(
    count: int = Query(default=10, ge=1, le=MAX_PAGE),
    store: DatasetStore = Depends(get_store),
) -> BlockListResponse:
    """Last rows of the dataset, in file order."""
    return _listing(store.tail(count))


@router.get("/search", response_model=BlockListResponse)
def search_blocks(
    q: str = Query(min_length=1, max_length=128),
    limit: int = Query(default=100, ge=1, le=MAX_PAGE),
    store: DatasetStore = Depends(get_store),
) -> BlockListResponse:
    """Rows whose block number, inscription id or sat number contains q."""
    return _listing(store.search(q, limit=limit))


@router.get("", response_model=BlockListResponse)
def list_blocks(
    offset: int = Query(default=0, ge=0),
    count: int = Query(default=100, ge=1, le=MAX_PAGE),
    store: DatasetStore = Depends(get_store),
) -> BlockListResponse:
    return _listing(store.range(offset, count))


@router.get("/{block_number}", response_model=BlockItem)
def get_block(block_number: int = Path(ge=0), store: DatasetStore = Depends(get_store)) -> BlockItem:
    record = store.lookup(block_number)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Block has no bitmap in the dataset.")
    return BlockItem.from_record(record)
