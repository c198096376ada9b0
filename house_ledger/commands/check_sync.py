import asyncio
import json

from house_ledger.service import LedgerService


async def check_sync(service: LedgerService) -> int:
    try:
        result = await service.sync_checker.check_sync()
    finally:
        await service.aclose()
    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0 if result.synchronized else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(check_sync(LedgerService.from_settings())))
