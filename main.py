#!/usr/bin/env python3
"""
TLS Certificate Watch - Main Application Entry Point
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
import uvicorn

from tls_cert_watch import __version__
from tls_cert_watch.api import create_app
from tls_cert_watch.config import Config, create_example_config, load_config
from tls_cert_watch.logger import setup_logging
from tls_cert_watch.metrics import MetricsCollector
from tls_cert_watch.orchestrator import Orchestrator


class TLSCertWatch:
    """Main application class for TLS Certificate Watch."""

    def __init__(self, config_path: str, once: bool = False):
        self.config: Optional[Config] = None
        self.metrics: Optional[MetricsCollector] = None
        self.orchestrator: Optional[Orchestrator] = None
        self.server: Optional[uvicorn.Server] = None
        self.config_path = config_path
        self.once = once
        # Initialize logger early to avoid AttributeError
        self.logger = logging.getLogger(__name__)

    def initialize(self) -> None:
        """Load configuration and build every component; any failure is fatal."""
        self.config = load_config(self.config_path)

        setup_logging(self.config)
        self.logger.info("Initializing TLS Certificate Watch")

        self.metrics = MetricsCollector()
        self.orchestrator = Orchestrator(config=self.config, metrics=self.metrics)

        if self.config.api_enabled and not self.once:
            app = create_app(orchestrator=self.orchestrator, metrics=self.metrics)
            self.server = uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=self.config.bind_address,
                    port=self.config.port,
                    log_level=self.config.log_level.lower(),
                    access_log=False,
                )
            )

        self.logger.info("TLS Certificate Watch initialized successfully")

    async def run(self) -> None:
        """Run discovery cycles, or a single cycle in --once mode."""
        if not self.orchestrator:
            self.initialize()

        assert self.orchestrator is not None, "Orchestrator should be initialized"
        assert self.config is not None, "Config should be initialized"

        try:
            if self.once:
                self.logger.info("Running a single discovery cycle")
                await self.orchestrator.run_once()
                return

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.add_signal_handler(sig, self._signal_handler, sig)
                except NotImplementedError:
                    # Windows event loops have no signal handler support
                    signal.signal(sig, lambda signum, frame: self._signal_handler(signum))

            if self.server:
                self.logger.info(
                    f"Starting HTTP server on {self.config.bind_address}:{self.config.port}"
                )
                # Whichever side exits first stops the other
                server_task = asyncio.create_task(self.server.serve())
                watch_task = asyncio.create_task(self.orchestrator.run())
                await asyncio.wait({server_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
                self.orchestrator.stop()
                self.server.should_exit = True
                await asyncio.gather(watch_task, server_task)
            else:
                await self.orchestrator.run()
        finally:
            await self.shutdown()

    def _signal_handler(self, signum: int) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown")
        if self.orchestrator:
            self.orchestrator.stop()

    async def shutdown(self) -> None:
        """Release network resources."""
        if self.orchestrator:
            await self.orchestrator.close()
        self.logger.info("Graceful shutdown completed")


@click.command()
@click.argument(
    "config",
    required=False,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--once", is_flag=True, help="Run a single discovery cycle, send alerts and exit")
@click.option(
    "--example-config",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write an example configuration file and exit",
)
@click.version_option(__version__, "--version", "-v", prog_name="TLS Certificate Watch")
def main(config: Optional[Path], once: bool, example_config: Optional[Path]) -> None:
    """TLS Certificate Watch - Alert on expiring certificates and deprecated signature algorithms."""
    if example_config:
        create_example_config(str(example_config))
        click.echo(f"Example configuration written to {example_config}")
        return

    if config is None:
        raise click.UsageError("Missing argument 'CONFIG'.")

    try:
        app = TLSCertWatch(str(config), once=once)
        app.initialize()
        asyncio.run(app.run())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except Exception as e:
        print(f"Application failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
