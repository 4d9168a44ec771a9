"""
Command line entry point: runs one crawler stage per process.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from . import __version__
from .crawler.service import STAGES, StageService, seed
from .errors import CrawlerError
from .utils.config import Config, load_config
from .utils.logger import log_system_info, setup_logging


class CrawlerApp:
    """Runs a single stage until it is told to stop."""

    def __init__(self):
        self.service: Optional[StageService] = None
        self.logger = logging.getLogger(__name__)
        self._shutdown_event = asyncio.Event()

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._request_shutdown, signum)

    def _request_shutdown(self, signum):
        self.logger.info(f"Received signal {signum}, initiating shutdown...")
        self._shutdown_event.set()

    async def run(self, config: Config, stage: str) -> int:
        """Run a stage. Returns the process exit code."""
        self.setup_signal_handlers()
        try:
            self.service = StageService(config, stage)
            await self.service.initialize()
            await self.service.run(self._shutdown_event)

        except CrawlerError as e:
            self.logger.error(f"Fatal error: {e}")
            return 1

        finally:
            if self.service:
                await self.service.close()
            self.logger.info(f"=== {stage.upper()} FINISHED ===")

        return 0

    async def seed(self, config: Config, urls: List[str]) -> int:
        urls = urls or config.frontier.seed_urls
        if not urls:
            self.logger.error("No seed URLs given on the command line or in frontier.seed_urls")
            return 1

        try:
            count = await seed(config, urls)
        except CrawlerError as e:
            self.logger.error(f"Seeding failed: {e}")
            return 1

        self.logger.info(f"Published {count} seed URLs")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Distributed web crawler stages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py frontier                         # Run the frontier coordinator
  python main.py fetcher --config my_config.yaml  # Run a fetch worker
  python main.py seed http://site.test/           # Inject a seed URL
        """
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        'stage',
        choices=STAGES + ('seed',),
        help='Stage to run, or "seed" to publish seed URLs'
    )

    parser.add_argument(
        'urls',
        nargs='*',
        help='Seed URLs (only with "seed")'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'stagecrawler {__version__}'
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    try:
        config = load_config(args.config)
    except (CrawlerError, yaml.YAMLError) as e:
        print(f"Error: {e}")
        return 1

    setup_logging(config.logging, args.stage)
    log_system_info()

    app = CrawlerApp()
    try:
        if args.stage == 'seed':
            return asyncio.run(app.seed(config, args.urls))
        return asyncio.run(app.run(config, args.stage))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
