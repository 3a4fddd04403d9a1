"""
Delivery Worker Runner

Standalone process running every background sweep of the gateway:

- OutboxSweeper: re-sends outbox entries onto the processing channel
- ProcessingQueueConsumer: delivers processing-channel envelopes
- PoisonQueueRetryOrchestrator: retries or dead-letters poison envelopes
- IdempotencyHousekeeping: purges expired processing records

Each runs as an independent asyncio task; they share only the database.

Usage:
    python -m src.workers.delivery_runner

Environment Variables:
    See src/core/config.py; DATABASE_BACKEND / DATABASE_URL / SQLITE_PATH
    select the store.
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from src.core.config import GatewaySettings
from src.core.database import DatabaseAdapter, ensure_schema
from src.core.delivery import ExternalEndpointClient
from src.core.dlq import DeadLetterSink
from src.core.inbox import IdempotencyGuard
from src.core.messaging import ChannelTransport, TableMessageChannel
from src.core.observability import configure_logging, init_metrics, init_tracing
from src.core.outbox import OutboxStore, OutboxSweeper
from src.core.periodic import PeriodicSweep
from src.core.poison import PoisonQueueRetryOrchestrator, ProcessingQueueConsumer

logger = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL_SECONDS = 3600.0


class IdempotencyHousekeeping(PeriodicSweep):
    """Deletes processing records older than the retention window."""

    name = "IdempotencyHousekeeping"

    def __init__(self, guard: IdempotencyGuard, interval_seconds: float = HOUSEKEEPING_INTERVAL_SECONDS):
        super().__init__(interval_seconds)
        self._guard = guard

    async def run_once(self, stop_event: Optional[asyncio.Event] = None) -> int:
        return await self._guard.purge_expired()


class DeliveryRunner:
    """
    Wires the delivery components and manages their lifecycle with
    graceful shutdown.
    """

    def __init__(self, settings: GatewaySettings, db: Optional[DatabaseAdapter] = None):
        self.settings = settings
        self.db = db or DatabaseAdapter()
        self.endpoint: Optional[ExternalEndpointClient] = None
        self.sweeps: List[PeriodicSweep] = []
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        """Handle shutdown signal."""
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self):
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def build(self) -> List[PeriodicSweep]:
        """Connect, ensure the schema, and construct every sweep."""
        settings = self.settings
        await self.db.connect()
        await ensure_schema(self.db, **settings.schema_tables())

        processing = TableMessageChannel(self.db, settings.poison.processing_queue_name)
        poison = TableMessageChannel(self.db, settings.poison.poison_queue_name)
        self.endpoint = ExternalEndpointClient(settings.endpoint)
        sink = DeadLetterSink(
            self.db,
            table_name=settings.poison.dead_letter_table_name,
            write_attempts=settings.poison.dead_letter_write_attempts
        )

        self.sweeps = [
            OutboxSweeper(
                OutboxStore(self.db, settings.outbox),
                ChannelTransport(processing),
                dead_letter_sink=sink
            ),
            ProcessingQueueConsumer(processing, poison, self.endpoint, settings.poison),
            PoisonQueueRetryOrchestrator(poison, self.endpoint, sink, settings.poison),
            IdempotencyHousekeeping(IdempotencyGuard(self.db, settings.idempotency)),
        ]
        return self.sweeps

    async def run(self):
        """Run every sweep until shutdown is requested."""
        logger.info("Starting Delivery Runner")
        logger.info(f"  Database: {self.db.config}")
        logger.info(f"  Endpoint: {self.settings.endpoint.url}")

        self._setup_signal_handlers()

        try:
            await self.build()
            for sweep in self.sweeps:
                await sweep.start()
            logger.info("Delivery Runner is running")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Delivery Runner error: {e}", exc_info=True)
            raise
        finally:
            logger.info("Stopping Delivery Runner")
            for sweep in self.sweeps:
                await sweep.stop()
            if self.endpoint:
                await self.endpoint.close()
            await self.db.disconnect()
            logger.info("Delivery Runner stopped")

    def health_check(self) -> Dict[str, Any]:
        """Return health status for monitoring."""
        running = {sweep.name: sweep.is_running for sweep in self.sweeps}
        healthy = bool(running) and all(running.values())
        return {
            "status": "healthy" if healthy else "unhealthy",
            "sweeps": running,
            "shutdown_requested": self._shutdown_requested
        }


async def main():
    """Main entry point."""
    settings = GatewaySettings.from_env()

    configure_logging(level=settings.log_level, structured=settings.log_structured)
    init_tracing(otlp_endpoint=settings.otlp_endpoint)
    init_metrics(otlp_endpoint=settings.otlp_endpoint)

    runner = DeliveryRunner(settings)
    await runner.run()


if __name__ == "__main__":
    asyncio.run(main())
