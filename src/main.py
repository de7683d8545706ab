"""
Main entry point for the instance mapping operator.

Wires the store, event bus, reconciler, controller and REST API together
and runs them on one event loop until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Optional

from api import APIServer, create_app
from config import Config, get_config
from controller import Controller
from db import DatabaseManager
from events import EventBus
from reconciler import MappingReconciler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


class Application:
    """Main application that orchestrates the controller and the API."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.db: Optional[DatabaseManager] = None
        self.event_bus: Optional[EventBus] = None
        self.controller: Optional[Controller] = None
        self.api_server: Optional[APIServer] = None
        self.running = False
        self._stopped = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing instance mapping operator")

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        self.event_bus = EventBus()

        reconciler = MappingReconciler(self.db, inventory_config=self.config.inventory)
        self.controller = Controller(
            db_manager=self.db,
            reconciler=reconciler,
            config=self.config.controller,
            event_bus=self.event_bus,
        )

        app = create_app(
            self.db,
            event_bus=self.event_bus,
            controller=self.controller,
            api_config=self.config.api,
            inventory_config=self.config.inventory,
        )
        self.api_server = APIServer(app, self.config.api)

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting instance mapping operator")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api_server.start()),
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping instance mapping operator")
        self.running = False

        if self.api_server:
            await self.api_server.stop()
        if self.controller:
            await self.controller.stop()
        if self.event_bus:
            await self.event_bus.close()
        if self.db:
            await self.db.close()

        logger.info("Instance mapping operator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config.api.log_level)
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
