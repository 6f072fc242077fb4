"""Run the dispatcher repeatedly until the pending sync queue drains."""

from __future__ import annotations

import argparse
import asyncio
from datetime import UTC, datetime

from commerce_sync.config import get_settings
from commerce_sync.database import close_database
from commerce_sync.models import SyncObjectType
from commerce_sync.services import OrchestratorServices
from commerce_sync.services.dispatcher import drive_to_completion
from commerce_sync.utils.logging import setup_logging


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--object-type",
        choices=[object_type.value for object_type in SyncObjectType],
        default=None,
    )
    parser.add_argument("--shop", default=None)
    parser.add_argument("--max-iterations", type=int, default=50)
    return parser.parse_args()


async def main() -> None:
    args = _parse_args()
    settings = get_settings()
    setup_logging(settings)
    services = OrchestratorServices.from_settings(settings)

    started_at = datetime.now(UTC)
    result = await drive_to_completion(
        services.dispatcher,
        object_type=SyncObjectType(args.object_type) if args.object_type else None,
        shop=args.shop,
        max_iterations=args.max_iterations,
        pause_seconds=settings.DISPATCHER_ROUND_DELAY_SECONDS,
    )
    duration_ms = round((datetime.now(UTC) - started_at).total_seconds() * 1000, 2)
    stats = result.last_result.stats if result.last_result else None
    print(
        (
            "Drive finished "
            f"(complete={result.complete}, iterations={result.iterations}, "
            f"pending={stats.pending if stats else 0}, "
            f"failed={stats.failed if stats else 0}, duration_ms={duration_ms})"
        )
    )
    await close_database()


if __name__ == "__main__":
    asyncio.run(main())
