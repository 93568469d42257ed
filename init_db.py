import asyncio
import sys

from backend.app.core.config import get_settings
from backend.app.core.logging import configure_logging
from backend.app.db.session import Database


async def init_models(reset: bool = False):
    settings = get_settings()
    configure_logging(settings)
    database = Database.from_settings(settings)
    try:
        if reset:
            # Drops every table first - DEV MODE ONLY
            if settings.is_production:
                raise SystemExit("Refusing to reset the production database")
            await database.drop_all()
        await database.create_all()
    finally:
        await database.dispose()
    print(">>> Tables Created Successfully!")


if __name__ == "__main__":
    asyncio.run(init_models(reset="--reset" in sys.argv[1:]))
