from __future__ import annotations

import hmac
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from market_escrow.auth import authenticate_user, generate_api_key, require_admin
from market_escrow.config import get_session, settings
from market_escrow.engine import EscrowEngine
from market_escrow.models import Account
from market_escrow.money import MoneyError, to_major, to_minor
from market_escrow.providers.base import ProviderError
from market_escrow.providers.ledger import LedgerProvider
from market_escrow.schemas import (
    AccountOut,
    BalanceOut,
    DepositRequest,
    Envelope,
    RegisterRequest,
    RegisterResponse,
    ReputationRequest,
    RotateKeyResponse,
    ok,
)
from market_escrow.services import get_escrow_engine

router = APIRouter()


@router.post("/accounts/register", status_code=201, response_model=Envelope[RegisterResponse], tags=["Accounts"])
def register(req: RegisterRequest, session: Session = Depends(get_session)) -> dict:
    is_admin = False
    if req.admin_token is not None:
        if not settings.admin_token or not hmac.compare_digest(req.admin_token, settings.admin_token):
            raise HTTPException(status_code=403, detail="Invalid admin token")
        is_admin = True

    api_key, api_key_hash = generate_api_key()

    with session.begin():
        existing = session.execute(select(Account.id).where(Account.username == req.username)).scalar_one_or_none()
        if existing is not None:
            raise HTTPException(status_code=409, detail="An account with this username already exists")

        account = Account(
            username=req.username,
            email=req.email,
            api_key_hash=api_key_hash,
            wallet_handle=req.wallet_handle,
            is_admin=is_admin,
            reputation=0.0,
        )
        session.add(account)
        session.flush()
        session.refresh(account)

    return ok(RegisterResponse(account=AccountOut.model_validate(account), api_key=api_key))


@router.get("/accounts/me", response_model=Envelope[AccountOut], tags=["Accounts"])
def me(current: dict = Depends(authenticate_user), session: Session = Depends(get_session)) -> dict:
    with session.begin():
        acct = session.get(Account, current["id"])
        if acct is None:
            raise HTTPException(status_code=404, detail="Account not found")
        return ok(AccountOut.model_validate(acct))


@router.post("/accounts/rotate-key", response_model=Envelope[RotateKeyResponse], tags=["Accounts"])
def rotate_key(current: dict = Depends(authenticate_user), session: Session = Depends(get_session)) -> dict:
    new_key, new_hash = generate_api_key()

    with session.begin():
        acct = session.get(Account, current["id"])
        if acct is None:
            raise HTTPException(status_code=404, detail="Account not found")
        acct.previous_api_key_hash = acct.api_key_hash
        acct.key_rotated_at = datetime.now(timezone.utc)
        acct.api_key_hash = new_hash
        session.add(acct)

    return ok(RotateKeyResponse(api_key=new_key, grace_period_minutes=settings.key_rotation_grace_minutes))


@router.put("/accounts/{account_id}/reputation", response_model=Envelope[AccountOut], tags=["Accounts"])
def set_reputation(
    account_id: str,
    req: ReputationRequest,
    _admin: dict = Depends(require_admin),
    session: Session = Depends(get_session),
) -> dict:
    with session.begin():
        acct = session.get(Account, account_id)
        if acct is None:
            raise HTTPException(status_code=404, detail="Account not found")
        acct.reputation = req.reputation
        session.add(acct)
        session.flush()
        session.refresh(acct)
    return ok(AccountOut.model_validate(acct))


@router.post("/accounts/wallet/deposit", status_code=201, response_model=Envelope[BalanceOut], tags=["Accounts"])
def deposit(
    req: DepositRequest,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    provider = escrows.provider
    if not isinstance(provider, LedgerProvider):
        raise HTTPException(status_code=400, detail=f"Deposits are made directly with the {provider.name} provider")
    currency = req.currency.upper()
    try:
        amount = to_minor(req.amount, currency)
    except MoneyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None

    wallet = escrows.store.wallet_handle(current["id"])
    try:
        available = provider.deposit(wallet, amount, currency)
    except ProviderError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    return ok(
        BalanceOut(wallet=wallet, currency=currency, available=to_major(available, currency), available_minor=available)
    )


@router.get("/accounts/wallet/balance", response_model=Envelope[BalanceOut], tags=["Accounts"])
def balance(
    currency: str,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    provider = escrows.provider
    if not isinstance(provider, LedgerProvider):
        raise HTTPException(status_code=400, detail=f"Balances are held by the {provider.name} provider")
    currency = currency.upper()
    if currency not in settings.currencies:
        raise HTTPException(status_code=400, detail=f"Unsupported currency: {currency}")
    wallet = escrows.store.wallet_handle(current["id"])
    available = provider.balance(wallet, currency)
    return ok(
        BalanceOut(wallet=wallet, currency=currency, available=to_major(available, currency), available_minor=available)
    )
