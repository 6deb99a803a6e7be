#!/usr/bin/env python3
"""
Invitation maintenance sweep:
  - flips overdue pending invitations to "expired"
  - restores memberships for accepted invitations whose membership write never landed

Expiry is also evaluated on every read, so running this is optional for
correctness; it keeps stored statuses tidy.
Run with: python -m scripts.sweep_invitations
"""
import asyncio
import logging

from taskflow.db.mongo import connect, close
from taskflow.services.invitations import expire_stale_invitations, repair_accepted_invitations

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("sweep_invitations")


async def main():
    await connect(max_retries=3)
    try:
        expired = await expire_stale_invitations()
        repaired = await repair_accepted_invitations()
        logger.info("Sweep done: %d expired, %d memberships restored", expired, repaired)
    finally:
        await close()


if __name__ == "__main__":
    asyncio.run(main())
