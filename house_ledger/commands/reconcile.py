import argparse
import asyncio
from pathlib import Path
from typing import List, Optional

from house_ledger.config import DEFAULT_ADMIN_ID
from house_ledger.logging_config import get_logger
from house_ledger.reconciliation import results_to_csv
from house_ledger.schemas import ReconciliationResult
from house_ledger.service import LedgerService

logger = get_logger(__name__)


async def reconcile(
    service: LedgerService,
    address: Optional[str] = None,
    dry_run: bool = False,
    admin_id: str = DEFAULT_ADMIN_ID,
    output_path: Optional[str] = None,
) -> int:
    """
    Reconcile one address, or sweep every balance record when ``address`` is
    None. Exit code is 1 when any mismatch could not be reconciled.
    """
    try:
        if address:
            results: List[ReconciliationResult] = [await service.reconciler.reconcile_user(address, admin_id)]
        else:
            results = await service.reconciler.reconcile_all(admin_id, dry_run=dry_run)
    finally:
        await service.aclose()

    csv_text, mismatches = results_to_csv(results)
    if output_path:
        Path(output_path).write_text(csv_text)
        logger.info("Wrote %s reconciliation rows to %s", mismatches, output_path)
    else:
        print(csv_text, end="")
    return 1 if any(not r.success for r in results) else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile off-chain balances against the chain")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user", help="address to reconcile")
    target.add_argument("--all", action="store_true", help="check every balance record")
    parser.add_argument("--dry-run", action="store_true", help="report discrepancies without writing")
    parser.add_argument("--admin", default=DEFAULT_ADMIN_ID, help="admin id recorded in the audit log")
    parser.add_argument("--output", help="write the CSV report here instead of stdout")
    args = parser.parse_args(argv)

    if args.user and args.dry_run:
        parser.error("--dry-run only applies to --all")

    service = LedgerService.from_settings()
    return asyncio.run(reconcile(service, args.user, args.dry_run, args.admin, args.output))


if __name__ == "__main__":
    raise SystemExit(main())
