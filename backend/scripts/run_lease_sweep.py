"""Reclaim generation jobs whose worker lease expired.

Usage:
    cd backend
    python -m scripts.run_lease_sweep
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from creditflow.core.logging import setup_logging
from creditflow.modules.job.tasks import run_lease_sweep


async def main():
    """Run one lease sweep."""
    print("\n" + "=" * 60)
    print("Reclaiming Expired Job Leases")
    print("=" * 60)

    summary = await run_lease_sweep()

    print("\nResults:")
    print(f"  Reclaimed: {summary['reclaimed']}")
    print(f"  Requeued: {summary['requeued']}")
    print(f"  Terminated (reservation refunded): {summary['terminated']}")
    for job_id in summary["job_ids"]:
        print(f"    - {job_id}")


if __name__ == "__main__":
    setup_logging(json_format=False)
    asyncio.run(main())
