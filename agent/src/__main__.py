from __future__ import annotations

import argparse
import logging
import os
import platform
import signal
import sys
import threading
from collections.abc import Sequence

from agent.src.agent import AgentError, run
from agent.src.config import (
    DEFAULT_LOG_LEVEL,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_INTERVAL,
    ConfigError,
    load_config,
)
from agent.src.health import start_health_server
from agent.src.logs import prepare_logger
from agent.src.metrics import METRICS

PROGRAM_NAME = "kubeip-agent"
RUNTIME_VERSION = "0.1.0"


def version() -> str:
    return os.getenv("APP_VERSION", RUNTIME_VERSION)


def version_text() -> str:
    return "\n".join(
        [
            f"{PROGRAM_NAME} {version()}",
            f"  Build date: {os.getenv('BUILD_DATE', 'unknown')}",
            f"  Git commit: {os.getenv('GIT_COMMIT', 'unknown')}",
            f"  Git branch: {os.getenv('GIT_BRANCH', 'unknown')}",
            f"  Built with: Python {platform.python_version()}",
        ]
    )


class _VersionAction(argparse.Action):
    def __init__(self, option_strings: Sequence[str], dest: str, **kwargs: object) -> None:
        super().__init__(option_strings, dest, nargs=0, help="print the version and exit")

    def __call__(self, parser: argparse.ArgumentParser, *args: object, **kwargs: object) -> None:
        print(version_text())
        parser.exit()


def build_parser() -> argparse.ArgumentParser:
    """Return the CLI parser.

    Flags default to ``None`` so :func:`load_config` can tell an explicit
    flag from one that should fall back to its environment variable.
    """
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        description="replaces the node's public IP address with a static public IP address",
    )
    parser.add_argument("--version", action=_VersionAction)
    subcommands = parser.add_subparsers(dest="command")

    run_parser = subcommands.add_parser("run", help="run agent")

    configuration = run_parser.add_argument_group("Configuration")
    configuration.add_argument(
        "--node-name",
        help="Kubernetes node name (not needed if running in node) [$CLUSTER_NAME]",
    )
    configuration.add_argument(
        "--kubeconfig",
        help="path to Kubernetes configuration file (not needed if running in node) [$KUBECONFIG]",
    )
    configuration.add_argument(
        "--retry-interval",
        help=(
            "when the agent fails to assign the static public IP address, it will retry "
            f"after this interval (default: {int(DEFAULT_RETRY_INTERVAL.total_seconds() // 60)}m) "
            "[$RETRY_INTERVAL]"
        ),
    )
    configuration.add_argument(
        "--retry-attempts",
        type=int,
        help=(
            "number of attempts to assign the static public IP address "
            f"(default: {DEFAULT_RETRY_ATTEMPTS}) [$RETRY_ATTEMPTS]"
        ),
    )

    logging_group = run_parser.add_argument_group("Logging")
    logging_group.add_argument(
        "--log-level",
        help=(
            "set log level (debug, info(*), warning, error, fatal, panic) "
            f"(default: {DEFAULT_LOG_LEVEL}) [$LOG_LEVEL]"
        ),
    )
    logging_group.add_argument(
        "--json",
        action="store_true",
        default=None,
        help="produce log in JSON format: Logstash and Splunk friendly [$LOG_JSON]",
    )

    development = run_parser.add_argument_group("Development")
    development.add_argument(
        "--develop-mode",
        action="store_true",
        default=None,
        help="enable develop mode [$DEV_MODE]",
    )

    health = run_parser.add_argument_group("Health")
    health.add_argument(
        "--health-port",
        type=int,
        help="serve /healthz, /readyz and /metrics on this port, 0 disables (default: 0) [$HEALTH_PORT]",
    )
    return parser


def run_cmd(args: argparse.Namespace) -> int:
    """Wire signals, logging and configuration, then run the agent until stopped."""
    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        cfg = load_config(args)
    except ConfigError as exc:
        # Settings are unusable, so report through a default text logger.
        log = prepare_logger(DEFAULT_LOG_LEVEL, False, version())
        log.critical("kubeip agent failed: %s", exc)
        return 1

    log = prepare_logger(cfg.log_level, cfg.log_json, version())

    METRICS.build_info.info(
        {
            "version": version(),
            "revision": os.getenv("GIT_COMMIT", "unknown"),
        }
    )

    ready = threading.Event()
    health_server = None
    if cfg.health_port:
        try:
            health_server = start_health_server(ready=ready, port=cfg.health_port)
        except OSError as exc:
            log.critical("kubeip agent failed: starting health server: %s", exc)
            return 1

    try:
        run(shutdown_event, log, cfg, ready=ready)
    except AgentError as exc:
        log.critical("kubeip agent failed: %s", exc, exc_info=True)
        return 1
    finally:
        if health_server is not None:
            health_server.shutdown()
            health_server.server_close()
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command != "run":
        parser.print_help(sys.stderr)
        sys.exit(2)
    sys.exit(run_cmd(args))


if __name__ == "__main__":
    main()
