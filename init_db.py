import asyncio
import logging

from backend.app.db.base import engine, Base
# Import models so their tables are registered on Base.metadata
from backend.app.models import MfaProfileRecord, TrustedDevice, LoginAttempt  # noqa: F401

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def init_models(reset: bool = False):
    async with engine.begin() as conn:
        if reset:
            # DEV MODE ONLY: wipes secrets and trusted devices
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    logger.info("MFA tables created")


if __name__ == "__main__":
    import sys
    asyncio.run(init_models(reset="--reset" in sys.argv))
