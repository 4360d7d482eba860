from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from . import challsrv
from .charts import render_latency_charts
from .latency import LatencyMap
from .wfe.config import (
    DEFAULT_API_BASE,
    DEFAULT_DOMAIN_BASE,
    DEFAULT_HTTP_ONE_ADDR,
    DEFAULT_RPC_ADDR,
    DEFAULT_TERMS_URL,
    LoadConfig,
)
from .wfe.errors import ParseError, ProcessError
from .wfe.process_control import CompanionProcess, ContainerChallengeServer, LocalChallengeServer
from .wfe.state import State

LOGGER = logging.getLogger("loadgen")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    env = os.environ
    parser = argparse.ArgumentParser(description="ACME load generator")
    parser.add_argument(
        "--log-level",
        default=env.get("LOADGEN_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    wfe = subparsers.add_parser("wfe", help="Generate load against the ACME web front end")
    wfe.add_argument("--api-base", default=env.get("LOADGEN_API_BASE", DEFAULT_API_BASE))
    wfe.add_argument(
        "--rpc-addr",
        default=env.get("LOADGEN_RPC_ADDR", DEFAULT_RPC_ADDR),
        help="host:port of the challenge server RPC listener",
    )
    wfe.add_argument(
        "--http-one-addr",
        default=env.get("LOADGEN_HTTP_ONE_ADDR", DEFAULT_HTTP_ONE_ADDR),
        help="host:port the challenge server answers HTTP-01 validations on",
    )
    wfe.add_argument(
        "--rate",
        type=float,
        default=float(env.get("LOADGEN_RATE", "1")),
        help="Base actions per second",
    )
    wfe.add_argument("--key-size", type=int, default=int(env.get("LOADGEN_KEY_SIZE", "2048")))
    wfe.add_argument("--domain-base", default=env.get("LOADGEN_DOMAIN_BASE", DEFAULT_DOMAIN_BASE))
    wfe.add_argument(
        "--runtime",
        type=float,
        default=float(env.get("LOADGEN_RUNTIME_SECONDS", "60")),
        help="Seconds to generate load for",
    )
    wfe.add_argument("--terms-url", default=env.get("LOADGEN_TERMS_URL", DEFAULT_TERMS_URL))
    wfe.add_argument(
        "--max-regs",
        type=int,
        default=int(env.get("LOADGEN_MAX_REGS", "0")),
        help="Maximum registrations to keep (0 for no limit)",
    )
    wfe.add_argument("--load-state", default=env.get("LOADGEN_LOAD_STATE"), help="Snapshot to restore at startup")
    wfe.add_argument("--save-state", default=env.get("LOADGEN_SAVE_STATE"), help="Where to snapshot registrations")
    wfe.add_argument("--latency-path", default=env.get("LOADGEN_LATENCY_PATH"), help="Where to write the latency report")
    wfe.add_argument("--chart-dir", default=env.get("LOADGEN_CHART_DIR"), help="Render latency charts into this directory")
    wfe.add_argument(
        "--chall-srv-bin",
        default=env.get("LOADGEN_CHALL_SRV_BIN", "loadgen"),
        help="Executable providing the chall-srv subcommand",
    )
    wfe.add_argument(
        "--chall-srv-image",
        default=env.get("LOADGEN_CHALL_SRV_IMAGE"),
        help="Run the challenge server from this Docker image instead of a local process",
    )
    wfe.add_argument(
        "--dont-run-chall-srv",
        action="store_true",
        help="Use an already running challenge server",
    )

    chall = subparsers.add_parser("chall-srv", help="Run the HTTP-01 challenge server")
    chall.add_argument("--rpc-addr", default=env.get("LOADGEN_RPC_ADDR", DEFAULT_RPC_ADDR))
    chall.add_argument("--http-one-addr", default=env.get("LOADGEN_HTTP_ONE_ADDR", DEFAULT_HTTP_ONE_ADDR))

    chart = subparsers.add_parser("chart", help="Render charts from a latency report")
    chart.add_argument("--latency-path", required=True)
    chart.add_argument("--output-dir", default=env.get("LOADGEN_CHART_DIR", "."))

    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_companion(args: argparse.Namespace) -> CompanionProcess | None:
    if args.dont_run_chall_srv:
        return None
    if args.chall_srv_image:
        return ContainerChallengeServer(args.chall_srv_image, args.rpc_addr, args.http_one_addr)
    return LocalChallengeServer(args.chall_srv_bin, args.rpc_addr, args.http_one_addr)


def run_wfe(args: argparse.Namespace) -> int:
    try:
        config = LoadConfig(
            api_base=args.api_base,
            rpc_addr=args.rpc_addr,
            http_one_addr=args.http_one_addr,
            rate=args.rate,
            key_size=args.key_size,
            domain_base=args.domain_base,
            runtime_seconds=args.runtime,
            terms_url=args.terms_url,
            max_registrations=args.max_regs,
        )
    except ValueError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    state = State(config, companion=build_companion(args))

    if args.load_state:
        try:
            state.load_snapshot(Path(args.load_state))
        except (OSError, ParseError) as exc:
            LOGGER.error("Failed to load state from %s: %s", args.load_state, exc)
            return 1

    try:
        state.run()
    except ProcessError as exc:
        LOGGER.error("Aborting run: %s", exc)
        return 1

    for call_class, summary in sorted(state.latency.summaries().items()):
        LOGGER.info(
            "%s: count=%d good=%d error=%d p50=%.1fms p99=%.1fms",
            call_class,
            summary["count"],
            summary["good"],
            summary["error"],
            summary["p50_ms"],
            summary["p99_ms"],
        )

    if args.save_state:
        state.save_snapshot(Path(args.save_state))
    if args.latency_path:
        state.dump(Path(args.latency_path))
    if args.chart_dir:
        render_latency_charts(state.latency, Path(args.chart_dir))
    return 0


def run_chart(args: argparse.Namespace) -> int:
    try:
        latency = LatencyMap.load(Path(args.latency_path))
    except (OSError, ValueError, KeyError, TypeError) as exc:
        LOGGER.error("Failed to read latency report %s: %s", args.latency_path, exc)
        return 1
    written = render_latency_charts(latency, Path(args.output_dir))
    return 0 if written else 1


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging(args.log_level)

    if args.command == "wfe":
        return run_wfe(args)
    if args.command == "chall-srv":
        challsrv.serve(args.rpc_addr, args.http_one_addr)
        return 0
    return run_chart(args)


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
