#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Command line interface.

    migrate status <environment>
    migrate apply <environment> [--dry-run]
    migrate rollback <environment> --to <identifier> [--dry-run]

Exit codes: 0 Completed, 1 Failed, 2 LockDenied, 130 Cancelled.
`status` always exits 0 once its environment is configured: connection
and read failures (a busy or unreachable database) are printed as the
problem. Configuration errors (unknown environment, unreadable config
file) are usage errors and exit 1 for every command.

SIGINT/SIGTERM request cancellation; the run stops before the next unit.
A second signal is not intercepted.
"""
import argparse
import asyncio
import logging
import signal
import sys
from typing import Mapping, Optional, TextIO

from schemaledger.config import (
    LOG_FORMAT,
    MigrateConfig,
    configure_logger,
    default_actor,
    load_config,
    parse_log_level,
)
from schemaledger.errors import MigrationError
from schemaledger.migrations import (
    CancelToken,
    DirectorySource,
    HttpSource,
    LockCoordinator,
    MigrationEngine,
    MigrationExecutor,
    RunResult,
    RunState,
    StatusReport,
    VersionLedger,
)
from schemaledger.storage import SQLAlchemyBackend

logger = logging.getLogger(__name__)

EXIT_CODES = {
    RunState.COMPLETED: 0,
    RunState.FAILED: 1,
    RunState.LOCK_DENIED: 2,
    RunState.CANCELLED: 130,
}
EXIT_ERROR = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='migrate',
        description='Apply versioned schema migrations exactly once, in order'
    )
    parser.add_argument(
        '--config',
        help='Config file (default: $MIGRATE_CONFIG or migrate.yaml/yml/json)'
    )
    parser.add_argument(
        '--migrations',
        help='Migrations directory or bundle URL (overrides config)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: from config, else INFO)'
    )

    commands = parser.add_subparsers(dest='command', required=True)

    status = commands.add_parser('status', help='Show applied and pending migrations')
    status.add_argument('environment', help='Environment name')

    apply = commands.add_parser('apply', help='Apply pending migrations')
    apply.add_argument('environment', help='Environment name')
    apply.add_argument(
        '--dry-run', action='store_true',
        help='Plan only: no lease, no statements, no ledger writes'
    )

    rollback = commands.add_parser('rollback', help='Revert migrations above a target')
    rollback.add_argument('environment', help='Environment name')
    rollback.add_argument(
        '--to', dest='target', required=True, metavar='IDENTIFIER',
        help='Roll back down to (not including) this identifier'
    )
    rollback.add_argument(
        '--dry-run', action='store_true',
        help='Plan only: no lease, no statements, no ledger writes'
    )

    return parser


def make_source(location: str):
    if location.startswith(('http://', 'https://')):
        return HttpSource(location)
    return DirectorySource(location)


def build_engine(config: MigrateConfig, environment: str,
                 backend: SQLAlchemyBackend, actor: str) -> MigrationEngine:
    """Wire the engine for one environment from config."""
    ledger = VersionLedger(backend, table=config.ledger_table)
    lock = LockCoordinator(
        backend,
        table=f'{config.ledger_table}_lock',
        ttl=config.lock_ttl,
        poll_interval=config.lock_poll_interval,
    )
    executor = MigrationExecutor(
        backend, ledger, actor=actor,
        batch_size=config.batch_size,
        max_batches=config.max_batches,
    )
    return MigrationEngine(
        backend,
        make_source(config.migrations),
        environment,
        ledger=ledger,
        lock=lock,
        executor=executor,
        actor=actor,
        lock_timeout=config.lock_timeout,
    )


def print_status(report: StatusReport, out: TextIO) -> None:
    print(f"Environment: {report.environment}", file=out)

    print(f"Applied ({len(report.applied)}):", file=out)
    for entry in report.applied:
        print(f"  {entry.identifier}  {entry.description}  "
              f"{entry.applied_at.isoformat(timespec='seconds')}  "
              f"by {entry.applied_by}  ({entry.duration_ms}ms)", file=out)

    print(f"Pending ({len(report.pending)}):", file=out)
    for identifier in report.pending:
        print(f"  {identifier}", file=out)

    if report.failed:
        print(f"Failed or rolled back ({len(report.failed)}):", file=out)
    for entry in report.failed:
        line = f"  {entry.identifier}  {entry.status.value}"
        if entry.error_message:
            line += f": {entry.error_message}"
        print(line, file=out)

    if report.lock_holder:
        print(f"Lease held by: {report.lock_holder}", file=out)
    if report.problem is not None:
        print(f"Problem: {report.problem}", file=out)


def print_problem(environment: str, error: MigrationError, out: TextIO) -> None:
    logger.error("Cannot read environment '%s': %s", environment, error)
    print(f"Environment: {environment}", file=out)
    print(f"Problem: {error}", file=out)


def print_result(result: RunResult, environment: str, out: TextIO) -> None:
    verb = 'applied' if result.operation == 'apply' else 'reverted'
    if result.dry_run:
        print(f"{result.operation} {environment} (dry run): "
              f"{result.state.value}", file=out)
        for identifier in result.planned:
            print(f"  would be {verb}: {identifier}", file=out)
    else:
        print(f"{result.operation} {environment}: {result.state.value} "
              f"({len(result.completed_identifiers)} of {len(result.planned)} "
              f"{verb})", file=out)
        for unit in result.results:
            outcome = 'ok' if unit.success else 'FAILED'
            print(f"  {unit.identifier}  {outcome}  {unit.execution_time_ms}ms",
                  file=out)

    if result.reclaimed is not None:
        print(f"Warning: {result.reclaimed}", file=out)
    if result.error is not None:
        print(f"Error: {result.error}", file=out)


def _install_signal_handlers(token: CancelToken) -> list:
    loop = asyncio.get_running_loop()
    installed = []

    def on_signal(sig):
        token.cancel(sig.name)
        # A second signal gets the default behaviour
        loop.remove_signal_handler(sig)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal, sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Cannot install handler for %s on this platform", sig.name)
            continue
        installed.append(sig)
    return installed


def _remove_signal_handlers(installed: list) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)


async def run(args: argparse.Namespace, config: MigrateConfig,
              environ: Optional[Mapping[str, str]] = None,
              out: Optional[TextIO] = None) -> int:
    """
    Execute one CLI command.

    Returns:
        Process exit code
    """
    out = out or sys.stdout
    profile = config.environment(args.environment)
    backend = SQLAlchemyBackend(
        profile.resolve_url(environ),
        schema=profile.schema,
        transactional_ddl=profile.transactional_ddl,
    )
    actor = config.actor or default_actor(environ)

    try:
        await backend.connect()
    except MigrationError as e:
        if args.command != 'status':
            raise
        print_problem(args.environment, e, out)
        return 0

    try:
        engine = build_engine(config, args.environment, backend, actor)

        if args.command == 'status':
            try:
                report = await engine.status()
            except MigrationError as e:
                print_problem(args.environment, e, out)
            else:
                print_status(report, out)
            return 0

        token = CancelToken()
        installed = _install_signal_handlers(token)
        try:
            if args.command == 'apply':
                result = await engine.apply(dry_run=args.dry_run, cancel=token)
            else:
                result = await engine.rollback(args.target, dry_run=args.dry_run,
                                               cancel=token)
        finally:
            _remove_signal_handlers(installed)

        print_result(result, args.environment, out)
        return EXIT_CODES[result.state]
    finally:
        await backend.close()


def main(argv=None) -> int:
    """Console entry point for `migrate`."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except MigrationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    if args.migrations:
        config.migrations = args.migrations

    try:
        log_level = parse_log_level(args.log_level or config.log_level)
    except MigrationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    configure_logger('schemaledger', log_file=config.log_file,
                     log_format=LOG_FORMAT, log_level=log_level)

    try:
        return asyncio.run(run(args, config))
    except MigrationError as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
