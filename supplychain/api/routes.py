"""
API Routes for the Supply-Chain Ledger

Command endpoints (append-only, no PATCH, no PUT, no DELETE):
- POST /addProduct   - Record a product as a new block
- POST /addEvent     - Append an event for a recorded product

Query endpoints:
- GET /chain         - All product blocks in chain order
- GET /events        - All events in arrival order
- GET /chain/{id}    - One product block with its events

Error bodies are always {"message": ...}. Status codes are set by the
exception handlers registered in supplychain.main.
"""

from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..core.ledger import LedgerService, NotFoundError
from ..schemas import EventRecord, ProductBlock


router = APIRouter(tags=["Ledger"])


def get_ledger(request: Request) -> LedgerService:
    """Get ledger from app state."""
    return request.app.state.ledger


# ============================================================
# Request/Response Models
# ============================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddProductRequest(_CamelModel):
    """
    Request to record a product.
    Presence is checked by the ledger so that missing fields map to 400.
    """
    product_id: Optional[str] = None
    description: Optional[str] = None
    owner: Optional[str] = None
    wallet_address: Optional[str] = None


class AddEventRequest(_CamelModel):
    """Request to append a product event."""
    product_id: Optional[str] = None
    event_type: Optional[str] = None
    key: Optional[str] = None
    value: Optional[str] = None
    wallet_address: Optional[str] = None


class AddProductResponse(BaseModel):
    message: str
    block: ProductBlock


class AddEventResponse(BaseModel):
    message: str
    event: EventRecord


class ProductDetailResponse(BaseModel):
    block: ProductBlock
    events: list[EventRecord]


# ============================================================
# Command Endpoints
# ============================================================

@router.post(
    "/addProduct",
    response_model=AddProductResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a product",
)
async def add_product(body: AddProductRequest, request: Request):
    """
    Append a product block to the chain.

    Products cannot be altered or removed after they are recorded.
    """
    block = get_ledger(request).append_product(
        product_id=body.product_id,
        description=body.description,
        owner=body.owner,
        wallet_address=body.wallet_address,
    )
    return AddProductResponse(message="Block added", block=block)


@router.post(
    "/addEvent",
    response_model=AddEventResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a product event",
)
async def add_event(body: AddEventRequest, request: Request):
    """
    Append an event for a product that is already on the chain.
    """
    event = get_ledger(request).append_event(
        product_id=body.product_id,
        event_type=body.event_type,
        key=body.key,
        value=body.value,
        wallet_address=body.wallet_address,
    )
    return AddEventResponse(message="Event added", event=event)


# ============================================================
# Query Endpoints
# ============================================================

@router.get("/chain", response_model=list[ProductBlock], summary="List product blocks")
async def list_chain(request: Request):
    return list(get_ledger(request).list_products())


@router.get("/events", response_model=list[EventRecord], summary="List product events")
async def list_events(request: Request):
    return list(get_ledger(request).list_events())


@router.get(
    "/chain/{product_id}",
    response_model=ProductDetailResponse,
    summary="Get one product with its events",
)
async def get_product(product_id: str, request: Request):
    ledger = get_ledger(request)
    block = ledger.get_product(product_id)
    if block is None:
        raise NotFoundError(product_id)
    return ProductDetailResponse(
        block=block,
        events=list(ledger.events_for_product(product_id)),
    )


def message_response(status_code: int, message: str, **extra) -> JSONResponse:
    """Build the {"message": ...} error body used by every endpoint."""
    return JSONResponse(status_code=status_code, content={"message": message, **extra})
