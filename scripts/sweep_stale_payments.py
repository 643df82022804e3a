# scripts/sweep_stale_payments.py
"""
Fail payments stuck in PROCESSING (crash or lost gateway response) and flag
them for reconciliation. Meant for cron:

    python -m scripts.sweep_stale_payments --older-than 900
"""
import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from models.base import Base, init_engine_and_session
from models.payments_store import list_needing_reconciliation
from services.payments.sweeper import sweep_stale_payments

# Load .env from project root
load_dotenv(Path(__file__).resolve().parents[1] / ".env")


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    ap.add_argument("--older-than", type=int,
                    default=int(os.getenv("PAYMENT_STALE_AFTER_SEC", "900")),
                    help="age in seconds after which a PROCESSING payment is stale")
    ap.add_argument("--list", action="store_true",
                    help="also print every payment flagged for reconciliation")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    engine, _ = init_engine_and_session()
    Base.metadata.create_all(engine, checkfirst=True)

    moved = sweep_stale_payments(args.older_than)
    print(f"[✓] {len(moved)} stale payment(s) failed")
    for pid in moved:
        print(f"    {pid}")

    if args.list:
        for p in list_needing_reconciliation():
            print(f"[!] {p['payment_id']} {p['status']} order={p['order_id']} "
                  f"reason={p['failure_reason'] or '-'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
