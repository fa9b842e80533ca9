import logging

from entitlement_api.db.session import engine
from entitlement_api.db.base import Base
from entitlement_api.db import models  # noqa: F401  registers tables on Base.metadata

logger = logging.getLogger(__name__)


def init_db(bind=None):
    """Create any missing tables. Used when RUN_MIGRATIONS is off (local dev)."""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ensured")
