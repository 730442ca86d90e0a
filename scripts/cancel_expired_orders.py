"""Cancel pending orders whose payment never arrived.

Meant to run from cron (e.g. hourly). Cancelled orders get their stock
restored and the customer is notified.

Usage:
    python scripts/cancel_expired_orders.py [--hours 24]
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from storefront.config import settings
from storefront.database import async_session_maker, engine
from storefront.logger import log
from storefront.orders import cancel_expired_orders


async def main(hours: int) -> int:
    async with async_session_maker() as session:
        result = await cancel_expired_orders(session, older_than_hours=hours)
    await engine.dispose()

    log.info(f"Cancelled {result['cancelled']} expired orders")
    print(json.dumps(result, indent=2))
    return 1 if result["errors"] else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--hours", type=int, default=settings.ORDER_PAYMENT_TIMEOUT_HOURS,
                        help="age after which an unpaid order expires")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.hours)))
