import logging
import time
from sqlalchemy.exc import OperationalError

from core.database import engine, Base

# force import models so SQLAlchemy knows them
import core.models  # noqa: F401
import onramp.models  # noqa: F401
import rewards.models  # noqa: F401
import reconciliation.models  # noqa: F401

logger = logging.getLogger(__name__)


def init_db():
    logger.info("Creating database tables...")

    for attempt in range(1, 8):
        try:
            Base.metadata.create_all(bind=engine)
            logger.info("Database tables ready.")
            return
        except OperationalError as e:
            logger.warning("DB not ready (attempt %s/7): %s", attempt, e)
            time.sleep(min(2 * attempt, 10))

    raise RuntimeError("Database not reachable after retries. Startup aborted.")
