"""
Main entry point for dnsentry.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path

from dnsentry.config.config import Config
from dnsentry.config.manifest import Manifest
from dnsentry.controller.controller import Controller
from dnsentry.provider.mock import InMemoryDNS
from dnsentry.provider.registry import ProviderRegistry
from dnsentry.source.memory import InMemoryObjectStore


async def run(config: Config) -> Controller:
    """Set up the components and run the controller once or until stopped."""
    logger = logging.getLogger("dnsentry")

    store = InMemoryObjectStore()
    providers = ProviderRegistry()
    controller = Controller(config, store, providers)

    if config.manifest:
        manifest = Manifest.from_yaml(config.manifest)
        backend = InMemoryDNS()
        for provider in manifest.create_providers(backend):
            await controller.add_provider(provider)
        keys = manifest.create_entries(store)
        logger.info(f"Loaded {len(manifest.providers)} providers and {len(keys)} entries from {config.manifest}")
    else:
        logger.warning("No manifest configured, nothing to reconcile")

    if config.once:
        await controller.run_once()
        statistic = await controller.statistic()
        for (owner_id, ptype, provider), count in sorted(statistic.owners.items()):
            logger.info(f"owner {owner_id or '<none>'}: {count} entries on {ptype}/{provider}")
        return controller

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.stop)
        except NotImplementedError:
            pass
    logger.debug("Starting background tasks: Workers, Reconciliation Loop, Recheck Tracker, Event Watcher")
    await controller.run()
    return controller


def main():
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logger = logging.getLogger("dnsentry")

    config_path = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    config = Config.from_yaml(config_path)

    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(log_level)
    # dnspython is chatty on DEBUG
    logging.getLogger("dns").setLevel(logging.DEBUG if log_level == logging.DEBUG else logging.WARNING)

    logger.info(f"Starting dnsentry controller {config.ident}")
    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        print("\nShutting down dnsentry")
        sys.exit(0)


if __name__ == "__main__":
    main()
