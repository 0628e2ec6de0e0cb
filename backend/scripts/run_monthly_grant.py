"""Grant monthly credits to every account.

Safe to run more than once: each account is granted at most once per period.

Usage:
    cd backend
    python -m scripts.run_monthly_grant [YYYY-MM]
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from creditflow.core.logging import setup_logging
from creditflow.modules.ledger.tasks import run_monthly_grant


async def main(period=None):
    """Run the monthly grant for ``period`` (defaults to the current month)."""
    print("\n" + "=" * 60)
    print("Granting Monthly Credits")
    print("=" * 60)

    summary = await run_monthly_grant(period)

    print(f"\nPeriod: {summary['period']}")
    print(f"  Accounts granted: {summary['accounts_granted']}")
    print(f"  Accounts skipped (already granted): {summary['accounts_skipped']}")
    print(f"  Credits granted: {summary['credits_granted']}")


if __name__ == "__main__":
    setup_logging(json_format=False)
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
