from __future__ import annotations

import argparse
import json
import logging

import uvicorn

from market_escrow.config import settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="market_escrow", description="Marketplace escrow service")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="run the HTTP API (default)")
    sub.add_parser("seed", help="create demo accounts and a listing")
    sweep = sub.add_parser("sweep", help="run one background sweep and exit")
    sweep.add_argument("name", choices=["time-locks", "disputes", "funding-timeouts", "reconcile"])
    args = parser.parse_args(argv)

    if args.command == "seed":
        from market_escrow.seed import main as seed_main

        return seed_main()

    if args.command == "sweep":
        from market_escrow.config import engine
        from market_escrow.models import Base
        from market_escrow.tasks import SWEEPS

        logging.basicConfig(level=logging.INFO)
        if settings.auto_create_schema:
            Base.metadata.create_all(bind=engine)
        report = SWEEPS[args.name]()
        print(json.dumps({"sweep": args.name, **report.to_dict()}))
        return 0

    uvicorn.run(
        "market_escrow.app:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
