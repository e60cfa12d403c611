from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
import sys

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.append(str(BACKEND_DIR))

from accountguard.logging_utils import configure_logging  # noqa: E402
from accountguard.reconciliation import sweep_pending  # noqa: E402
from accountguard.services.identity_service import HttpIdentityProvider  # noqa: E402
from accountguard.services.storage_service import HttpObjectStorage  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Retry storage and identity cleanup left behind by account purges")
    parser.add_argument("--limit", type=int, default=100, help="Maximum queued tasks to retry in this run")
    args = parser.parse_args()

    configure_logging()
    summary = asyncio.run(sweep_pending(HttpObjectStorage(), HttpIdentityProvider(), limit=max(1, args.limit)))
    print(f"Reconciliation complete: {summary['done']} done, {summary['failed']} still pending.")
    if summary["failed"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
