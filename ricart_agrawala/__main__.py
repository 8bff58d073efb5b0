"""Headless harness: run the simulation for a number of ticks and print node state."""
from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from loguru import logger
from rich.table import Table

from .common import ConfigurationError, MAX_NODES, MIN_NODES, NodeState
from .config import SimulationConfig, config_template, load_config, save_config
from .driver import SimulationDriver
from .engine import MutexEngine
from .log import console, setup_logging
from .snapshot import SimulationSnapshot

STATE_STYLES = {
    NodeState.RELEASED: "green",
    NodeState.WANTED: "yellow",
    NodeState.HELD: "bold red",
}


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ricart_agrawala",
        description="Simulate Ricart-Agrawala distributed mutual exclusion.",
    )
    parser.add_argument(
        "-n", "--nodes", type=int, help=f"number of nodes ({MIN_NODES}-{MAX_NODES})"
    )
    parser.add_argument("-t", "--ticks", type=int, default=30, help="driver ticks to run")
    parser.add_argument("-s", "--seed", type=int, help="random seed")
    parser.add_argument("-p", "--probability", type=float, help="request probability per tick")
    parser.add_argument("-c", "--config", help="JSON configuration file")
    parser.add_argument("--save-config", help="write the effective configuration to this file")
    parser.add_argument(
        "--template", action="store_true", help="print a configuration template and exit"
    )
    parser.add_argument("--log-level", default="WARNING", help="loguru log level")
    parser.add_argument(
        "--quiet", action="store_true", help="only print the final summary"
    )
    return parser.parse_args(argv)


def _build_config(args: argparse.Namespace) -> SimulationConfig:
    config = load_config(args.config) if args.config else SimulationConfig()
    if args.nodes is not None:
        config = config.with_nodes(args.nodes)
    if args.seed is not None:
        config.seed = args.seed
    if args.probability is not None:
        config.request_probability = args.probability
    return config.validate()


def render_snapshot(snapshot: SimulationSnapshot, tick: int) -> Table:
    table = Table(
        title=f"Tick {tick}  T={snapshot.now}  Global clock={snapshot.global_clock}  "
        f"In flight={len(snapshot.in_flight)}"
    )
    table.add_column("Node", justify="right")
    table.add_column("State")
    table.add_column("Clock", justify="right")
    table.add_column("Request TS", justify="right")
    table.add_column("Pending")
    table.add_column("Deferred")
    table.add_column("CS timer", justify="right")
    for node in snapshot.nodes:
        table.add_row(
            str(node.id),
            f"[{STATE_STYLES[node.state]}]{node.state.name}[/]",
            str(node.clock),
            "-" if node.request_ts is None else str(node.request_ts),
            ", ".join(map(str, node.pending_replies)) or "-",
            ", ".join(map(str, node.deferred_replies)) or "-",
            str(node.cs_timer) if node.cs_timer else "-",
        )
    return table


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(args.log_level)

    if args.template:
        console.print_json(json.dumps(config_template()))
        return 0

    try:
        config = _build_config(args)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    if args.save_config:
        save_config(config, args.save_config)

    engine = MutexEngine(config)
    driver = SimulationDriver(engine)
    for _ in range(max(0, args.ticks)):
        snapshot = driver.tick()
        if not args.quiet:
            console.print(render_snapshot(snapshot, driver.tick_count))

    snapshot = engine.snapshot()
    console.print(
        f"Ran {driver.tick_count} ticks to T={snapshot.now}: "
        f"{engine.cs_entries} critical section entries, "
        f"{len(snapshot.messages)} messages retained, "
        f"{len(snapshot.in_flight)} in flight, "
        f"{engine.safety_violations} safety violations."
    )
    return 1 if engine.safety_violations else 0


if __name__ == "__main__":
    sys.exit(main())
