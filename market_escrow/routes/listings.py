from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from market_escrow.auth import authenticate_user
from market_escrow.config import get_session
from market_escrow.enums import ListingStatus
from market_escrow.models import Listing
from market_escrow.money import MoneyError, to_minor
from market_escrow.schemas import Envelope, ListingCreateRequest, ListingOut, ok

router = APIRouter()


@router.post("/listings", status_code=201, response_model=Envelope[ListingOut], tags=["Listings"])
def create_listing(
    req: ListingCreateRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> dict:
    currency = req.currency.upper()
    try:
        price = to_minor(req.price, currency)
    except MoneyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None

    with session.begin():
        listing = Listing(
            seller_id=current["id"],
            title=req.title,
            description=req.description,
            price=price,
            currency=currency,
            status=ListingStatus.ACTIVE,
        )
        session.add(listing)
        session.flush()
    return ok(ListingOut.from_model(listing))


@router.get("/listings", response_model=Envelope[list[ListingOut]], tags=["Listings"])
def list_listings(limit: int = 50, offset: int = 0, session: Session = Depends(get_session)) -> dict:
    with session.begin():
        rows = session.execute(
            select(Listing)
            .where(Listing.status == ListingStatus.ACTIVE)
            .order_by(Listing.created_at.desc())
            .limit(min(limit, 200))
            .offset(offset)
        ).scalars().all()
    return ok([ListingOut.from_model(row) for row in rows])


@router.get("/listings/{listing_id}", response_model=Envelope[ListingOut], tags=["Listings"])
def get_listing(listing_id: str, session: Session = Depends(get_session)) -> dict:
    with session.begin():
        listing = session.get(Listing, listing_id)
        if listing is None:
            raise HTTPException(status_code=404, detail="Listing not found")
    return ok(ListingOut.from_model(listing))
