from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import random
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from .config import ConfigError, load_config
from .core import CoreCharacter, CoreLike
from .models import AccountStoreError
from .reconcile import ReconciliationError, SweepContext
from .service import DiscordService

LOGGER = logging.getLogger(__name__)

DEFAULT_DATABASE = "data/guildlink.db"


@dataclass
class SweepSummary:
    processed: int = 0
    failures: List[int] = field(default_factory=list)


async def run_sweep(service: DiscordService, core: CoreLike) -> SweepSummary:
    """Reconcile every Active account once; one failing account never stops the rest."""
    summary = SweepSummary()
    ctx = SweepContext()
    queue = await service.get_all_player_accounts(ctx)
    LOGGER.info("Sweep started for %s account(s)", len(queue))
    for player_id in queue:
        summary.processed += 1
        try:
            main_character = await core.main_character(player_id)
            groups = await core.groups(player_id)
            if main_character is None:
                main_character = CoreCharacter(0, player_id)
            await service.update_player_account(main_character, groups, ctx)
        except (ReconciliationError, AccountStoreError) as exc:
            summary.failures.append(player_id)
            LOGGER.warning("Failed to update player %s: %s", player_id, exc)
        except Exception as exc:
            summary.failures.append(player_id)
            LOGGER.exception("Unexpected error updating player %s: %s", player_id, exc)
    LOGGER.info(
        "Sweep finished: %s processed, %s failed", summary.processed, len(summary.failures)
    )
    return summary


async def sweep_loop(
    service: DiscordService,
    core: CoreLike,
    interval_minutes: int,
    stop_event: asyncio.Event,
):
    base_interval = interval_minutes * 60
    while not stop_event.is_set():
        try:
            await run_sweep(service, core)
        except Exception as exc:
            LOGGER.exception("Sweep failed: %s", exc)
        jitter = min(base_interval * 0.1, 300)
        sleep_time = max(5, base_interval + random.uniform(-jitter, jitter))
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=sleep_time)
        except asyncio.TimeoutError:
            pass


def load_core(path: str) -> Any:
    """Import ``module:attribute``; a callable attribute is treated as a factory."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Core path must look like 'module:attribute', got {path!r}")
    target = getattr(importlib.import_module(module_name), attr)
    return target() if callable(target) else target


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="guildlink", description="Sync Discord guild membership with Core groups."
    )
    parser.add_argument("--config", help="path to the YAML configuration file")
    parser.add_argument("--database", default=DEFAULT_DATABASE, help="SQLite database file")
    parser.add_argument(
        "--core", required=True, help="Core client as 'module:attribute'"
    )
    parser.add_argument("--service-id", type=int, default=0)
    parser.add_argument(
        "--required-group", type=int, action="append", default=[], dest="required_groups"
    )
    parser.add_argument(
        "--loop", action="store_true", help="keep sweeping every SweepIntervalMinutes"
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    try:
        config = load_config(
            args.config, service_id=args.service_id, required_groups=args.required_groups
        )
    except ConfigError as exc:
        LOGGER.error("%s", exc)
        return 2
    logging.getLogger().setLevel(config.log_level)

    core = load_core(args.core)
    service = DiscordService.from_config(config, args.database)
    try:
        if args.loop:
            await sweep_loop(service, core, config.sweep_interval_minutes, asyncio.Event())
            return 0
        summary = await run_sweep(service, core)
        return 1 if summary.failures else 0
    finally:
        await service.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
    )
    args = build_parser().parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
