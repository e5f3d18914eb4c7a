"""
wow-harvester — CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Validate inputs.
  4. Build a ``Runtime`` and run the action inside ``asyncio.run``.
  5. Report result to stdout.

Install and run::

    pip install -e .
    wow-harvester --help
    wow-harvester init-db
    wow-harvester validate-config
    wow-harvester run-worker --role characters
    wow-harvester sweep ladder
    wow-harvester run-local --sweep ladder --sweep auctions
    wow-harvester request-character Thrall area-52
    wow-harvester inspect-dlq
    wow-harvester rate-stats
"""

from __future__ import annotations

import asyncio
import json
import platform
import signal
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="wow-harvester",
    help="WoW character, guild and market crawl coordinator.",
    add_completion=False,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None, db_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from wow_harvester.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        config = load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)

    if db_path:
        config = config.model_copy(
            update={"database": config.database.model_copy(update={"db_path": db_path})}
        )
    return config


def _configure_logging(config):
    """Set up logging from config."""
    from wow_harvester.utils.logging import configure_logging
    configure_logging(config.logging)


def _install_stop_handlers(stop: asyncio.Event) -> None:
    """Set ``stop`` on SIGINT/SIGTERM so in-progress jobs finish first."""
    if platform.system() == "Windows":
        return
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)


def _print_run(run) -> None:
    typer.echo(f"  Stage:     {run.pipeline_stage}")
    typer.echo(f"  Status:    {run.status}")
    typer.echo(f"  Published: {run.rows_processed}")
    if run.error_message:
        typer.echo(f"  Error:     {run.error_message}")


def _parse_seeds(seeds: Optional[list[str]]) -> list[tuple[str, str]]:
    """``"name@realm"`` → ``(name, realm)``."""
    parsed: list[tuple[str, str]] = []
    for seed in seeds or []:
        name, sep, realm = seed.rpartition("@")
        if not sep or not name or not realm:
            typer.echo(f"[ERROR] Seed '{seed}' must look like 'Guild Name@realm-slug'.", err=True)
            raise typer.Exit(code=1)
        parsed.append((name, realm))
    return parsed


# ── Commands ──────────────────────────────────────────────────────────────────

@app.command("init-db")
def init_db(
    db_path: Optional[str] = typer.Option(
        None,
        "--db-path",
        help="Override DB path from config (e.g. data/db/test.db).",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Initialize the SQLite database and apply the full schema.

    Safe to run multiple times; all DDL uses IF NOT EXISTS.
    Also runs pending schema migrations.
    """
    from wow_harvester.db.connection import get_connection
    from wow_harvester.db.migrations import run_migrations
    from wow_harvester.db.schema import ALL_TABLE_NAMES, apply_schema

    config = _load_config_or_exit(config_path, db_path)
    _configure_logging(config)

    target_path = config.database.db_path
    typer.echo(f"Initializing database at: {target_path}")

    with get_connection(
        target_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    ) as conn:
        apply_schema(conn)
        migrations_applied = run_migrations(conn)

    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo(f"  Migrations applied: {migrations_applied}")
    typer.echo("[OK] Database ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file (default: config/default.toml).",
    ),
    show_full: bool = typer.Option(
        False,
        "--full",
        help="Print full config including all fields.",
    ),
) -> None:
    """Validate the configuration file and print parsed values.

    Exits with code 1 if the config fails validation.
    """
    config = _load_config_or_exit(config_path)

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Database path:    {config.database.db_path}")
    typer.echo(f"  Store backend:    {config.store.backend}")
    typer.echo(f"  Broker backend:   {config.broker.backend}")
    typer.echo(f"  Region:           {config.upstream.region}")
    creds = config.upstream.credentials()
    has_creds = bool(creds["access_token"] or (creds["client_id"] and creds["client_secret"]))
    typer.echo(f"  Credentials set:  {has_creds}")
    try:
        pool_size = len(config.upstream.api_keys())
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"  API key pool:     {pool_size}")
    typer.echo(f"  Realms:           {', '.join(str(r) for r in config.realms.connected_realm_ids)}")
    typer.echo(f"  Log level:        {config.logging.level}")
    typer.echo(f"  Debug mode:       {config.debug}")

    if show_full:
        full = config.model_dump(mode="json")
        typer.echo("")
        typer.echo("Full config (JSON):")
        typer.echo(json.dumps(full, indent=2, default=str))

    typer.echo("")
    typer.echo("[OK] Config valid.")


@app.command("run-worker")
def run_worker(
    role: str = typer.Option(
        "all",
        "--role",
        help="Job family to consume: characters | guilds | ladder | auctions | all.",
    ),
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency",
        help="Handler slots per queue family (default: [workers.concurrency]).",
    ),
    recover: bool = typer.Option(
        False,
        "--recover",
        help="Requeue messages left in-flight by a crashed worker (redis broker only).",
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Consume jobs until SIGINT/SIGTERM.

    \b
    In-progress jobs finish before the process exits; anything still queued
    stays queued for the next worker.
    """
    from wow_harvester.messaging.redis_broker import RedisBroker
    from wow_harvester.runtime import Runtime
    from wow_harvester.worker.worker import ROLE_KINDS

    config = _load_config_or_exit(config_path, db_path)
    _configure_logging(config)

    if role not in ROLE_KINDS:
        typer.echo(f"[ERROR] --role must be one of {sorted(ROLE_KINDS)}, got '{role}'.", err=True)
        raise typer.Exit(code=1)
    if config.broker.backend == "memory":
        typer.echo("[WARN] broker.backend = 'memory': this worker only sees jobs published in-process.")

    async def _run():
        stop = asyncio.Event()
        _install_stop_handlers(stop)
        async with Runtime(config) as rt:
            if recover:
                if isinstance(rt.broker, RedisBroker):
                    recovered = await rt.broker.recover_inflight()
                    typer.echo(f"  Recovered in-flight: {recovered}")
                else:
                    typer.echo("[WARN] --recover ignored: broker is not redis.")
            worker = rt.worker(role)
            worker.subscribe(concurrency)
            typer.echo(f"Worker '{role}' running. Ctrl-C to stop.")
            stats = await rt.router.run(stop)
            return worker.counters, stats

    counters, stats = asyncio.run(_run())
    typer.echo("")
    typer.echo(f"  Counters: {json.dumps(counters.as_dict())}")
    typer.echo(f"  Handled: {stats.handled}  Retried: {stats.retried}  "
               f"Dead-lettered: {stats.dead_lettered}  Rejected: {stats.rejected}")
    typer.echo("[OK] Worker stopped.")


@app.command("sweep")
def sweep(
    name: str = typer.Argument(..., help="Sweep to run: ladder | guilds | auctions."),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Exit 1 when another run holds the sweep lock instead of skipping.",
    ),
    seeds: Optional[list[str]] = typer.Option(
        None,
        "--seed",
        help="Guild to enqueue ahead of known guilds, as 'Name@realm-slug' (guilds sweep; repeatable).",
    ),
    limit: Optional[int] = typer.Option(None, "--limit", help="Max known guilds to re-index (guilds sweep)."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Enumerate one family of units of work and publish them.

    \b
    ladder    leaderboards of every configured realm, dungeon and period
              not already marked done
    guilds    known guilds (stalest first) plus --seed guilds
    auctions  one auctions job per realm plus commodities
    """
    from wow_harvester.errors import HarvesterError, RunLockHeldError
    from wow_harvester.producers import SWEEPS
    from wow_harvester.runtime import Runtime

    config = _load_config_or_exit(config_path, db_path)
    _configure_logging(config)

    if name not in SWEEPS:
        typer.echo(f"[ERROR] Unknown sweep '{name}'. Must be one of {sorted(SWEEPS)}.", err=True)
        raise typer.Exit(code=1)
    kwargs = {}
    if name == "guilds":
        kwargs = {"seeds": _parse_seeds(seeds), "limit": limit}

    async def _run():
        async with Runtime(config) as rt:
            return await rt.sweep(name).run(strict=strict, **kwargs)

    typer.echo(f"Running {name} sweep ...")
    try:
        run = asyncio.run(_run())
    except RunLockHeldError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except HarvesterError as exc:
        typer.echo(f"[ERROR] Sweep failed: {exc}", err=True)
        raise typer.Exit(code=1)

    _print_run(run)
    if run.status == "skipped":
        typer.echo("[OK] Skipped: another run holds the lock.")
    else:
        typer.echo("[OK] Sweep complete.")


@app.command("run-local")
def run_local(
    sweeps: Optional[list[str]] = typer.Option(
        None,
        "--sweep",
        help="Sweep to run first (repeatable; default: ladder).",
    ),
    seeds: Optional[list[str]] = typer.Option(
        None,
        "--seed",
        help="Guild seed for the guilds sweep, as 'Name@realm-slug' (repeatable).",
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Run sweeps and every worker in one process until the queues drain.

    Uses in-memory queues and progress markers regardless of config; the
    database is the configured SQLite file.
    """
    from wow_harvester.messaging.broker import InMemoryBroker
    from wow_harvester.producers import SWEEPS
    from wow_harvester.runtime import Runtime
    from wow_harvester.store.memory import MemoryKeyValueStore

    config = _load_config_or_exit(config_path, db_path)
    _configure_logging(config)

    names = sweeps or ["ladder"]
    unknown = [n for n in names if n not in SWEEPS]
    if unknown:
        typer.echo(f"[ERROR] Unknown sweep(s) {unknown}. Must be among {sorted(SWEEPS)}.", err=True)
        raise typer.Exit(code=1)
    seed_pairs = _parse_seeds(seeds)

    async def _run():
        stop = asyncio.Event()
        _install_stop_handlers(stop)
        async with Runtime(config, store=MemoryKeyValueStore(), broker=InMemoryBroker()) as rt:
            for sweep_name in names:
                kwargs = {"seeds": seed_pairs} if sweep_name == "guilds" else {}
                run = await rt.sweep(sweep_name).run(**kwargs)
                _print_run(run)
            worker = rt.worker("all")
            worker.subscribe()
            stats = await rt.router.run(stop, until_idle=True)
            return worker.counters, stats, await rt.router.queue_depths()

    counters, stats, depths = asyncio.run(_run())
    typer.echo("")
    typer.echo(f"  Counters: {json.dumps(counters.as_dict())}")
    typer.echo(f"  Dead-lettered: {stats.dead_lettered}  Rejected: {stats.rejected}")
    leftover = {q: d for q, d in depths.items() if d}
    if leftover:
        typer.echo(f"  Left in queues: {json.dumps(leftover)}")
    typer.echo("[OK] Local run complete.")


@app.command("request-character")
def request_character(
    name: str = typer.Argument(..., help="Character name."),
    realm: str = typer.Argument(..., help="Realm name or slug."),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Seconds to wait for a worker reply (default: broker.request_timeout_seconds).",
    ),
    refresh: bool = typer.Option(False, "--refresh", help="Fetch even if the character is stored."),
    inline: bool = typer.Option(
        False,
        "--inline",
        help="Serve the request with an in-process characters worker.",
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Look a character up, fetching it through a worker when not stored.

    \b
    Exit codes:
      0  found
      1  failed
      2  pending (queued; a worker will store it later)
      3  does not exist upstream
    """
    from wow_harvester.runtime import Runtime
    from wow_harvester.services.lookup import LookupStatus

    config = _load_config_or_exit(config_path, db_path)
    _configure_logging(config)

    async def _run():
        async with Runtime(config) as rt:
            service = rt.lookup()
            if not inline:
                return await service.lookup(name, realm, timeout, refresh=refresh)

            stop = asyncio.Event()
            rt.worker("characters").subscribe(1)
            consumer = asyncio.create_task(rt.router.run(stop))
            try:
                return await service.lookup(name, realm, timeout, refresh=refresh)
            finally:
                stop.set()
                await consumer

    result = asyncio.run(_run())
    typer.echo(f"  Character: {result.guid}")
    typer.echo(f"  Status:    {result.status}")
    if result.character is not None:
        typer.echo(json.dumps(result.character.model_dump(mode="json"), indent=2))

    exit_codes = {
        LookupStatus.FOUND: 0,
        LookupStatus.FAILED: 1,
        LookupStatus.PENDING: 2,
        LookupStatus.NOT_FOUND: 3,
    }
    code = exit_codes[result.status]
    if code:
        typer.echo(result.message, err=True)
        raise typer.Exit(code=code)
    typer.echo("[OK] Found.")


@app.command("inspect-dlq")
def inspect_dlq(
    limit: int = typer.Option(50, "--limit", help="Max dead-lettered messages to show."),
    show_depths: bool = typer.Option(True, "--depths/--no-depths", help="Also print every queue's depth."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """List dead-lettered messages (oldest first) without consuming them."""
    from wow_harvester.runtime import Runtime

    config = _load_config_or_exit(config_path, db_path)
    _configure_logging(config)

    async def _run():
        async with Runtime(config) as rt:
            return await rt.router.dead_letters(limit), await rt.router.queue_depths()

    entries, depths = asyncio.run(_run())

    if show_depths:
        typer.echo("Queue depths:")
        for queue, depth in sorted(depths.items()):
            typer.echo(f"  {queue:<40} {depth:>8}")
        typer.echo("")

    typer.echo(f"Dead letters: {len(entries)}")
    for entry in entries:
        dead_at = entry.dead_at.isoformat(timespec="seconds") if entry.dead_at else "-"
        typer.echo(
            f"  {dead_at}  {entry.reason:<13} {entry.routing_key:<30} "
            f"attempt={entry.attempt}  {entry.message_id}"
        )
        if entry.error:
            typer.echo(f"      {entry.error}")
    typer.echo("[OK] Done.")


@app.command("rate-stats")
def rate_stats(
    targets: Optional[list[str]] = typer.Option(
        None,
        "--target",
        help="Rate target to show (repeatable; default: blizzard:<upstream.region>).",
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Show the shared backoff delay each rate target is running at.

    Reads the delays workers publish to the store; with the memory store
    only the configured initial delay is shown.
    """
    from wow_harvester.runtime import Runtime
    from wow_harvester.upstream.blizzard import rate_target

    config = _load_config_or_exit(config_path, db_path)
    _configure_logging(config)

    names = targets or [rate_target(config.upstream.region)]

    async def _run():
        async with Runtime(config) as rt:
            for target in names:
                rt.limiters.get(target)
                await rt.limiters.sync(target, force=True)
            return rt.limiters.stats(), await rt.keys.snapshot()

    stats, keys = asyncio.run(_run())
    typer.echo(f"  {'Target':<24} {'Delay (ms)':>12} {'Throttled':>10}")
    for entry in stats:
        typer.echo(f"  {entry.target:<24} {entry.delay_ms:>12.1f} {str(entry.throttled):>10}")
    if keys:
        typer.echo(f"  {'API key':<24} {'Errors':>12} {'Locked':>10}")
        for row in keys:
            typer.echo(f"  {row['client_id']:<24} {row['errors']:>12} {str(row['locked']):>10}")
    typer.echo("[OK] Done.")


if __name__ == "__main__":
    app()
