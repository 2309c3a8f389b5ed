import argparse
import logging
import os
import signal
import threading
from typing import List, Optional

from .cache import load_cache_store
from .config.config_parser import build_settings, parse_config_file
from .config.logging_config import init_logging
from .resolver import ResolutionEngine
from .servers.udp_server import DNSServer
from .upstream import UpstreamResolver

DEFAULT_CONFIG_PATH = "config.yaml"

# Seconds a SIGTERM/SIGINT shutdown may take before the process kills itself.
HARD_KILL_TIMEOUT = 10.0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dnsrelay", description="Caching DNS forwarding proxy"
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to YAML config (default: {DEFAULT_CONFIG_PATH} when present)",
    )
    parser.add_argument(
        "--listen", metavar="HOST:PORT", help="Override listen.host/listen.port"
    )
    parser.add_argument(
        "--upstream",
        metavar="HOST:PORT",
        help="Override upstream.host/upstream.port",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warn", "warning", "error", "crit", "critical"],
        help="Override logging.level",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the DNS relay.
    Parses arguments, loads configuration, builds the cache, upstream client
    and resolution engine, and serves UDP until a termination signal arrives.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 on clean shutdown (SIGHUP, KeyboardInterrupt), 2 on
        SIGTERM/SIGINT, 1 on configuration, bind or server errors.

    Example use:
        CLI:
            dnsrelay --config config.yaml
            python -m dnsrelay --listen 127.0.0.1:5353 --upstream 9.9.9.9:53
    """
    args = _build_parser().parse_args(argv)

    config_path = args.config
    if config_path is None and os.path.isfile(DEFAULT_CONFIG_PATH):
        config_path = DEFAULT_CONFIG_PATH

    try:
        cfg = parse_config_file(
            config_path,
            listen=args.listen,
            upstream=args.upstream,
            log_level=args.log_level,
        )
        settings = build_settings(cfg)
    except ValueError as exc:
        print(str(exc))
        return 1

    # Initialize logging before any other operations
    init_logging(settings.logging)
    logger = logging.getLogger("dnsrelay.main")
    logger.info("Loaded config from %s", config_path or "<defaults>")

    try:
        cache = load_cache_store(
            settings.cache.backend, settings.cache.store_options()
        )
    except (KeyError, ImportError, TypeError, ValueError) as exc:
        logger.error("Cannot build cache backend %r: %s", settings.cache.backend, exc)
        return 1

    upstream = UpstreamResolver(
        settings.upstream.host,
        settings.upstream.port,
        timeout_ms=settings.upstream.timeout_ms,
        transport=settings.upstream.transport,
    )
    engine = ResolutionEngine(
        cache,
        upstream,
        default_ttl=settings.cache.default_ttl,
        recursion_available=settings.server.recursion_available,
        cache_empty_answers=settings.cache.cache_empty_answers,
    )

    try:
        server = DNSServer(
            settings.listen.host,
            settings.listen.port,
            engine,
            failure_policy=settings.server.failure_policy,
        )
    except OSError as exc:
        logger.error(
            "Cannot listen on %s:%d: %s",
            settings.listen.host,
            settings.listen.port,
            exc,
        )
        return 1

    # --- Coordinated shutdown state ---
    # shutdown_event is set by termination-like signals; exit_code carries the
    # desired return value of main().
    shutdown_event = threading.Event()
    shutdown_complete = threading.Event()
    exit_code = 0
    hard_kill_timer: Optional[threading.Timer] = None
    udp_error: Optional[BaseException] = None

    _sigusr1_pending = threading.Event()

    def _log_stats_and_purge() -> None:
        """Brief: Log engine and cache counters, then purge expired entries.

        Inputs:
          - None

        Outputs:
          - None
        """
        log = logging.getLogger("dnsrelay.main")
        log.info("SIGUSR1: engine stats %s", engine.stats())
        log.info("SIGUSR1: cache stats %s", cache.stats())
        try:
            removed = cache.purge()
        except Exception:
            log.exception("SIGUSR1: cache purge failed")
            return
        log.info("SIGUSR1: purged %d expired cache entries", removed)

    def _sigusr1_handler(_signum, _frame):
        # coalesce
        if _sigusr1_pending.is_set():
            return
        _sigusr1_pending.set()
        try:
            _log_stats_and_purge()
        finally:
            _sigusr1_pending.clear()

    def _request_shutdown(reason: str, code: int) -> None:
        """Brief: Request coordinated shutdown and set the exit code.

        Inputs:
          - reason: Signal name, e.g. 'SIGHUP' or 'SIGTERM'.
          - code: Exit code main() returns.

        Outputs:
          - None. For SIGTERM/SIGINT a hard-kill timer is armed so a stuck
            shutdown cannot keep the process alive.
        """
        nonlocal exit_code, hard_kill_timer
        log = logging.getLogger("dnsrelay.main")

        if shutdown_event.is_set():
            return

        exit_code = code
        shutdown_event.set()
        log.info("Received %s, initiating shutdown (exit code=%d)", reason, code)

        if reason in {"SIGTERM", "SIGINT"} and hard_kill_timer is None:

            def _force_exit() -> None:
                if shutdown_complete.is_set():
                    return
                log.error(
                    "Hard-kill timeout exceeded after %s; sending SIGKILL to self",
                    reason,
                )
                try:
                    os.kill(os.getpid(), signal.SIGKILL)
                except OSError:
                    os._exit(code or 2)

            hard_kill_timer = threading.Timer(HARD_KILL_TIMEOUT, _force_exit)
            hard_kill_timer.daemon = True
            hard_kill_timer.start()

    def _sighup_handler(_signum, _frame):
        _request_shutdown("SIGHUP", 0)

    def _sigterm_handler(_signum, _frame):
        _request_shutdown("SIGTERM", 2)

    def _sigint_handler(_signum, _frame):
        _request_shutdown("SIGINT", 2)

    for signame, handler in (
        ("SIGUSR1", _sigusr1_handler),
        ("SIGHUP", _sighup_handler),
        ("SIGTERM", _sigterm_handler),
        ("SIGINT", _sigint_handler),
    ):
        signum = getattr(signal, signame, None)
        if signum is None:
            continue
        try:
            signal.signal(signum, handler)
            logger.debug("Installed %s handler", signame)
        except ValueError:
            # signal.signal only works from the main thread.
            logger.warning("Could not install %s handler from this thread", signame)

    def _serve() -> None:
        nonlocal udp_error
        try:
            server.serve_forever()
        except Exception as e:
            udp_error = e

    host, port = server.server_address
    logger.info(
        "dnsrelay listening on %s:%d (udp), forwarding to %s over %s",
        host,
        port,
        upstream.address,
        upstream.transport,
    )

    udp_thread = threading.Thread(target=_serve, name="dnsrelay-udp", daemon=True)
    udp_thread.start()

    try:
        while not shutdown_event.is_set():
            if udp_error is not None:
                logger.error("Unhandled exception in UDP server: %s", udp_error)
                if exit_code == 0:
                    exit_code = 1
                break
            if not udp_thread.is_alive():
                break
            shutdown_event.wait(1.0)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        if not shutdown_event.is_set():
            shutdown_event.set()
            exit_code = 0
    finally:
        server.stop()
        udp_thread.join(timeout=5.0)
        shutdown_complete.set()
        if hard_kill_timer is not None:
            hard_kill_timer.cancel()
        logger.info("dnsrelay stopped")

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
