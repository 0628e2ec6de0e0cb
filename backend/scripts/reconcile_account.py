"""Check that account balances match their billing events.

Usage:
    cd backend
    python -m scripts.reconcile_account <account_id> [<account_id> ...]
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from creditflow.container import build_standalone_container
from creditflow.core.logging import setup_logging
from creditflow.modules.ledger.service import AccountNotFoundError


async def main(account_ids: list[str]) -> int:
    container = build_standalone_container()
    mismatches = 0
    try:
        for account_id in account_ids:
            try:
                report = await container.ledger.reconcile(account_id)
            except AccountNotFoundError:
                print(f"  {account_id}: not found")
                mismatches += 1
                continue
            marker = "OK" if report.consistent else "MISMATCH"
            print(
                f"  {account_id}: balance {report.credits_remaining}, "
                f"events {report.event_net} [{marker}]"
            )
            if not report.consistent:
                mismatches += 1
    finally:
        await container.aclose()
    return mismatches


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(2)
    setup_logging(json_format=False)
    sys.exit(1 if asyncio.run(main(sys.argv[1:])) else 0)
