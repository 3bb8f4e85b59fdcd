"""Periodic sweep expiring pending blood requests that passed their deadline."""

import logging
import os
import time

import config
from bloodbank.adapters import orm
from bloodbank.domain import commands
from bloodbank.service_layer import messagebus
from bloodbank.service_layer.unit_of_work import SqlAlchemyUnitOfWork

# Configure logging
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def sweep(uow=None):
    """Run one sweep; returns the ids of the requests that expired."""
    uow = uow or SqlAlchemyUnitOfWork()
    try:
        [expired] = messagebus.handle(commands.ExpireStaleRequests(), uow)
    except Exception as e:
        logger.error(f"Expiry sweep failed: {e}", exc_info=True)
        return []
    return expired


def main():
    """Main entry point for the expiry sweeper."""
    interval = config.get_sweep_interval_seconds()
    orm.start_mappers()
    logger.info(f"Expiry sweeper starting, running every {interval}s")

    while True:
        expired = sweep()
        if expired:
            logger.info(f"Expired requests: {', '.join(expired)}")
        time.sleep(interval)


if __name__ == "__main__":
    main()
