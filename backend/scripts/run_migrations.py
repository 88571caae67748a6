"""Wait for the learning path database to accept connections, then upgrade its schema.

Run before the API starts serving so lock, attempt and subject-state tables
exist. Without the ``generation_locks`` table the API still works, but only
with the per-process generation guard.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

LOGGER = logging.getLogger("learnpath.migrations")
URL_PLACEHOLDER = "%(LEARNPATH_DATABASE_URL)s"
DEFAULT_TIMEOUT = int(os.getenv("LEARNPATH_DB_MIGRATION_TIMEOUT", "60"))
DEFAULT_POLL_INTERVAL = float(os.getenv("LEARNPATH_DB_MIGRATION_POLL_INTERVAL", "3"))
BACKEND_ROOT = Path(__file__).resolve().parent.parent


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upgrade the learning path schema once the database is reachable.")
    parser.add_argument("--revision", default=os.getenv("LEARNPATH_DB_MIGRATION_REVISION", "head"))
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT, help="Seconds to wait for the database.")
    parser.add_argument("--poll-interval", type=float, default=DEFAULT_POLL_INTERVAL, help="Seconds between probes.")
    parser.add_argument("--config", default=str(BACKEND_ROOT / "alembic.ini"), help="Path to alembic.ini.")
    parser.add_argument(
        "--sql",
        action="store_true",
        help="Print the migration SQL instead of applying it; skips the readiness probe.",
    )
    return parser.parse_args(argv)


def get_alembic_config(config_path: str) -> Config:
    config = Config(config_path)
    config.set_main_option("script_location", str(BACKEND_ROOT / "alembic"))
    return config


def resolve_database_url(config: Config) -> str:
    """Prefer an explicit ``sqlalchemy.url``; otherwise take LEARNPATH_DATABASE_URL from the environment."""
    configured = config.get_main_option("sqlalchemy.url")
    if configured and configured != URL_PLACEHOLDER:
        return configured
    env_url = os.getenv("LEARNPATH_DATABASE_URL")
    if not env_url:
        raise RuntimeError("LEARNPATH_DATABASE_URL must be set before running migrations.")
    config.set_main_option("sqlalchemy.url", env_url)
    return env_url


def probe_database(database_url: str) -> None:
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    finally:
        engine.dispose()


def wait_for_database(database_url: str, *, timeout: int, poll_interval: float) -> None:
    deadline = time.monotonic() + timeout
    attempt = 0
    last_error: Optional[Exception] = None
    while True:
        attempt += 1
        try:
            probe_database(database_url)
            LOGGER.info("Database reachable after %s probe(s).", attempt)
            return
        except OperationalError as exc:
            last_error = exc
            LOGGER.warning("Database not ready (probe %s): %s", attempt, exc)
        except SQLAlchemyError as exc:
            LOGGER.error("Database probe failed permanently: %s", exc)
            raise RuntimeError("Database rejected the readiness probe.") from exc
        if time.monotonic() >= deadline:
            break
        time.sleep(poll_interval)
    raise RuntimeError(f"Database did not become ready within {timeout}s.") from last_error


def run_migrations(
    revision: str,
    *,
    timeout: int,
    poll_interval: float,
    config: Optional[Config] = None,
    sql: bool = False,
) -> None:
    config = config or get_alembic_config(str(BACKEND_ROOT / "alembic.ini"))
    database_url = resolve_database_url(config)
    if sql:
        LOGGER.info("Rendering migration SQL up to %s", revision)
        command.upgrade(config, revision, sql=True)
        return
    LOGGER.info("Upgrading schema to %s (timeout=%ss poll=%ss)", revision, timeout, poll_interval)
    wait_for_database(database_url, timeout=timeout, poll_interval=poll_interval)
    command.upgrade(config, revision)
    LOGGER.info("Schema upgrade complete.")


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=os.getenv("LEARNPATH_DB_MIGRATION_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(argv)
    try:
        run_migrations(
            args.revision,
            timeout=args.timeout,
            poll_interval=args.poll_interval,
            config=get_alembic_config(args.config),
            sql=args.sql,
        )
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Migration run failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
