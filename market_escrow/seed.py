from __future__ import annotations

from sqlalchemy.orm import Session

from market_escrow.auth import generate_api_key
from market_escrow.config import SessionLocal, engine, settings
from market_escrow.enums import ListingStatus
from market_escrow.models import Account, Base, Listing
from market_escrow.money import to_minor
from market_escrow.providers.ledger import LedgerProvider

DEMO_USERS = [
    {"username": "alice", "email": "alice@example.com", "reputation": 4.5, "is_admin": False},
    {"username": "bob", "email": "bob@example.com", "reputation": 4.0, "is_admin": False},
    {"username": "moderator", "email": "moderator@example.com", "reputation": 5.0, "is_admin": True},
]

DEMO_BALANCE = "1000"
DEMO_CURRENCY = "USDC"


def seed(session: Session) -> None:
    print("Seeding demo accounts...")
    created: list[tuple[Account, str]] = []
    with session.begin():
        for user in DEMO_USERS:
            api_key, api_key_hash = generate_api_key()
            acct = Account(
                username=user["username"],
                email=user["email"],
                api_key_hash=api_key_hash,
                is_admin=user["is_admin"],
                reputation=user["reputation"],
            )
            session.add(acct)
            session.flush()
            created.append((acct, api_key))

        seller = created[1][0]
        session.add(
            Listing(
                seller_id=seller.id,
                title="Vintage film camera",
                description="Fully working, with original strap.",
                price=to_minor("100", DEMO_CURRENCY),
                currency=DEMO_CURRENCY,
                status=ListingStatus.ACTIVE,
            )
        )

    if settings.provider == "ledger":
        ledger = LedgerProvider(SessionLocal)
        buyer = created[0][0]
        ledger.deposit(f"wallet:{buyer.id}", to_minor(DEMO_BALANCE, DEMO_CURRENCY), DEMO_CURRENCY)

    for acct, api_key in created:
        role = "admin" if acct.is_admin else "user"
        print(f"- {acct.username} ({role})  id={acct.id}  api_key={api_key}")


def main() -> int:
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        seed(session)
    finally:
        session.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
