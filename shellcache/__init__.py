"""shellcache - Offline app-shell cache controller for the Creatrid web app."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load(args: argparse.Namespace):
    """Load configuration and resolve the active store name, exiting on error."""
    from .config import ConfigError, load_config
    from .versioning import resolve_cache_name

    try:
        config = load_config(args.config)
        cache_name = resolve_cache_name(config.cache)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)
    return config, cache_name


def _open_storage(path: str):
    from .store import StoreError, init_store

    try:
        return init_store(path)
    except StoreError as e:
        logger.error("Storage error: %s", e)
        sys.exit(1)


def _build_controller(config, cache_name: str, conn):
    from .controller import CacheController
    from .fetcher import Fetcher

    fetcher = Fetcher(config.origin.base, timeout=config.origin.timeout)
    controller = CacheController(
        conn,
        fetcher,
        cache_name,
        shell_pages=config.cache.shell_pages,
        bypass_prefixes=config.cache.bypass_prefixes,
        write_workers=config.cache.write_workers,
    )
    return controller, fetcher


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - install, activate and serve."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("shellcache %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .controller import InstallError
    from .proxy import ProxyError, ProxyServer
    from .store import StoreError

    # 1. Load configuration
    config, cache_name = _load(args)
    logger.info("Configuration loaded from %s", args.config)
    logger.info("Fronting %s with cache %s", config.origin.base, cache_name)

    # 2. Initialize storage
    conn = _open_storage(config.database.path)
    logger.info("Cache storage initialized at %s", config.database.path)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    controller, fetcher = _build_controller(config, cache_name, conn)
    proxy: Optional[ProxyServer] = None

    try:
        # 4. Install (or reuse this version's complete store), then activate
        try:
            if not controller.resume():
                controller.install()
            purged = controller.activate()
        except (InstallError, StoreError) as e:
            logger.error("Controller lifecycle failed: %s", e)
            sys.exit(1)
        if purged:
            logger.info("Purged %d stale cache(s)", len(purged))

        # 5. Start the front
        if config.proxy.enabled:
            try:
                proxy = ProxyServer(config.proxy, controller, fetcher)
                proxy.start()
            except ProxyError as e:
                logger.error("Failed to start proxy server: %s", e)
                sys.exit(1)

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup - stop all components
        logger.info("Shutting down components...")

        if proxy is not None:
            proxy.stop()

        controller.close()
        fetcher.close()

        conn.close()
        logger.info("Cache storage closed")

        logger.info("Shutdown complete")


def _cmd_install(args: argparse.Namespace) -> None:
    """Execute the install command - populate the current store with the shell pages."""
    _setup_logging(args.verbose)

    from .controller import InstallError

    config, cache_name = _load(args)
    conn = _open_storage(config.database.path)
    controller, fetcher = _build_controller(config, cache_name, conn)

    try:
        stored = controller.install()
        print(f"Cached {stored} shell page(s) in {cache_name}.")
    except InstallError as e:
        print(f"Error: Install failed - {e}")
        sys.exit(1)
    finally:
        controller.close()
        fetcher.close()
        conn.close()


def _cmd_activate(args: argparse.Namespace) -> None:
    """Execute the activate command - purge every store except the current one."""
    from .store import StoreError, cache_keys, delete_cache

    config, cache_name = _load(args)
    conn = _open_storage(config.database.path)

    try:
        stale = [name for name in cache_keys(conn) if name != cache_name]
        for name in stale:
            delete_cache(conn, name)
            print(f"Deleted stale cache {name}")
        print(f"Purged {len(stale)} stale cache(s); current cache is {cache_name}.")
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()


def _cmd_caches(args: argparse.Namespace) -> None:
    """Execute the caches command - list stores with entry counts."""
    from .store import StoreError, cache_keys, entry_count

    config, cache_name = _load(args)
    conn = _open_storage(config.database.path)

    try:
        names = cache_keys(conn)
        if not names:
            print("No caches.")
            return
        for name in names:
            marker = "*" if name == cache_name else " "
            print(f"{marker} {name}  {entry_count(conn, name)} entries")
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()


def _cmd_clean(args: argparse.Namespace) -> None:
    """Execute the clean command - delete one store or all of them."""
    from .store import StoreError, cache_keys, delete_cache

    config, _ = _load(args)
    conn = _open_storage(config.database.path)

    try:
        if args.all:
            names = cache_keys(conn)
            for name in names:
                delete_cache(conn, name)
            print(f"Deleted all {len(names)} cache(s).")
        elif args.name:
            if delete_cache(conn, args.name):
                print(f"Deleted cache {args.name}.")
            else:
                print(f"Error: Cache {args.name} not found")
                sys.exit(1)
        else:
            print("Error: specify --name NAME or --all")
            sys.exit(1)
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )


def main() -> None:
    """Main entry point for the shellcache package."""
    parser = argparse.ArgumentParser(
        description="shellcache - Offline app-shell cache controller"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"shellcache {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Install, activate and serve through the cache (default)",
    )
    _add_config_argument(run_parser)
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Install subcommand
    install_parser = subparsers.add_parser(
        "install",
        help="Populate the current cache with the shell pages",
    )
    _add_config_argument(install_parser)
    install_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    install_parser.set_defaults(func=_cmd_install)

    # Activate subcommand
    activate_parser = subparsers.add_parser(
        "activate",
        help="Delete every cache except the current version",
    )
    _add_config_argument(activate_parser)
    activate_parser.set_defaults(func=_cmd_activate)

    # Caches subcommand
    caches_parser = subparsers.add_parser(
        "caches",
        help="List caches and their entry counts",
    )
    _add_config_argument(caches_parser)
    caches_parser.set_defaults(func=_cmd_caches)

    # Clean subcommand
    clean_parser = subparsers.add_parser(
        "clean",
        help="Delete a cache by name, or all caches",
    )
    _add_config_argument(clean_parser)
    clean_parser.add_argument(
        "--name",
        help="Name of the cache to delete",
    )
    clean_parser.add_argument(
        "--all",
        action="store_true",
        help="Delete every cache",
    )
    clean_parser.set_defaults(func=_cmd_clean)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
