# fynflow/core/cli.py
"""
CLI for fynflow serve, check and run commands.

Configuration comes from ``FYNFLOW_*`` environment variables (a ``.env``
file in the working directory is honoured); the definitions directory is
always taken from the command line.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Optional

from fynflow.core.app import Engine
from fynflow.core.errors import (
    ErrorCode,
    FynflowError,
    FynflowRuntimeError,
    ValidationReport,
)
from fynflow.core.logging import get_logger
from fynflow.core.models.config import EngineConfig
from fynflow.core.models.run import Run
from fynflow.core.types.status import RunStatus

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def setup_logging(loglevel: str) -> None:
    """Configure logging level globally."""
    from fynflow.core.logging import set_default_level

    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)

    root_logger = logging.getLogger('fynflow')
    root_logger.setLevel(level)

    for handler in root_logger.handlers:
        handler.setLevel(level)

    for name in logging.Logger.manager.loggerDict:
        if isinstance(name, str) and name.startswith('fynflow.'):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)


def parse_params(pairs: Optional[list[str]]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are JSON when they parse as JSON.

    Raises:
        ValueError: A pair has no ``=`` or an empty key.
    """
    params: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition('=')
        if not sep or not key:
            raise ValueError(f"invalid --param '{pair}', expected KEY=VALUE")
        try:
            params[key] = json.loads(raw)
        except ValueError:
            params[key] = raw
    return params


def _build_engine(definitions_dir: str) -> Engine:
    config = EngineConfig.from_env(definitions_dir=definitions_dir)
    return Engine(config)


def _format_run(run: Run) -> str:
    lines = [f'run {run.run_id} ({run.workflow_id}): {run.status.value}']
    for task_run in run.task_runs.values():
        line = f'  {task_run.task_id}: {task_run.status.value}'
        if task_run.attempts > 1:
            line += f' after {task_run.attempts} attempts'
        if task_run.error:
            line += f' - {task_run.error}'
        lines.append(line)
    if run.error:
        lines.append(f'error: {run.error}')
    return '\n'.join(lines)


def serve_command(args: argparse.Namespace) -> None:
    """Handle serve command."""
    logger = get_logger('cli')

    loglevel: str = args.loglevel
    setup_logging(loglevel)

    try:
        engine = _build_engine(args.definitions_dir)
    except FynflowError as e:
        logger.error(str(e))
        sys.exit(1)

    engine.config.log_config(logger)

    async def run_engine() -> None:
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping engine...')
            engine.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        await engine.run_forever()

    try:
        asyncio.run(run_engine())
    except KeyboardInterrupt:
        logger.info('Engine interrupted by user')
        return
    except FynflowError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Engine failed: {e}', exc_info=True)
        sys.exit(1)


def check_command(args: argparse.Namespace) -> None:
    """Handle check command: validate definitions without running anything."""
    logger = get_logger('cli')

    loglevel: str = args.loglevel
    setup_logging(loglevel)

    try:
        engine = _build_engine(args.definitions_dir)
        workflows = engine.load()
    except FynflowError as e:
        logger.error(str(e))
        sys.exit(1)

    errors = engine.loader.errors()
    if errors:
        report = ValidationReport('check')
        report.extend(errors)
        print(report.format_rust_style(), file=sys.stderr)
        sys.exit(1)

    scheduled = sum(1 for w in workflows.values() if w.schedule)
    print(
        f'ok: all definitions valid\n'
        f'  {len(workflows)} workflow(s), {scheduled} scheduled'
    )
    sys.exit(0)


def run_command(args: argparse.Namespace) -> None:
    """Handle run command: execute one workflow to completion."""
    logger = get_logger('cli')

    loglevel: str = args.loglevel
    setup_logging(loglevel)

    try:
        params = parse_params(args.param)
    except ValueError as e:
        logger.error(f'[{ErrorCode.CLI_INVALID_ARGS.value}] {e}')
        sys.exit(2)

    try:
        engine = _build_engine(args.definitions_dir)
        engine.load()
    except FynflowError as e:
        logger.error(str(e))
        sys.exit(1)

    async def run_once() -> Run:
        timed_out = False
        try:
            return await engine.run_workflow(args.workflow_id, params, timeout=args.timeout)
        except TimeoutError:
            timed_out = True
            raise
        finally:
            await engine.stop(cancel=timed_out)

    try:
        run = asyncio.run(run_once())
    except FynflowRuntimeError as e:
        logger.error(e.message)
        sys.exit(1)
    except TimeoutError:
        logger.error(f"Workflow '{args.workflow_id}' did not finish within {args.timeout}s")
        sys.exit(1)

    if args.json:
        print(json.dumps(run.to_dict(), indent=2, default=str))
    else:
        print(_format_run(run))
    sys.exit(0 if run.status == RunStatus.SUCCESS else 1)


def main(argv: Optional[list[str]] = None) -> None:
    """Main CLI entry point."""
    try:
        parser = argparse.ArgumentParser(
            prog='fynflow',
            description='fynflow workflow orchestrator',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Load definitions and run their cron schedules until interrupted
  fynflow serve ./workflows

  # Validate every definition file
  fynflow check ./workflows

  # Run one workflow now and print task statuses
  fynflow run ./workflows nightly-report --param date=2024-01-01
""",
        )
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        serve_parser = subparsers.add_parser(
            'serve',
            help='Load definitions and run the scheduler',
        )
        serve_parser.add_argument('definitions_dir', help='Definitions directory')
        serve_parser.add_argument(
            '--loglevel',
            choices=LOG_LEVELS,
            default='INFO',
            type=str.upper,
            help='Logging level (default: INFO)',
        )

        check_parser = subparsers.add_parser(
            'check',
            help='Validate definitions without running anything',
        )
        check_parser.add_argument('definitions_dir', help='Definitions directory')
        check_parser.add_argument(
            '--loglevel',
            choices=LOG_LEVELS,
            default='CRITICAL',
            type=str.upper,
            help='Logging level (default: CRITICAL, the report is printed instead)',
        )

        run_parser = subparsers.add_parser(
            'run',
            help='Run one workflow to completion',
        )
        run_parser.add_argument('definitions_dir', help='Definitions directory')
        run_parser.add_argument('workflow_id', help='Workflow to run')
        run_parser.add_argument(
            '-p',
            '--param',
            action='append',
            metavar='KEY=VALUE',
            help='Run parameter (repeatable; JSON values are decoded)',
        )
        run_parser.add_argument(
            '--timeout',
            type=float,
            default=None,
            help='Seconds to wait for the run (default: no limit)',
        )
        run_parser.add_argument(
            '--json',
            action='store_true',
            default=False,
            help='Print the run as JSON',
        )
        run_parser.add_argument(
            '--loglevel',
            choices=LOG_LEVELS,
            default='WARNING',
            type=str.upper,
            help='Logging level (default: WARNING)',
        )

        args = parser.parse_args(argv)

        match args.command:
            case 'serve':
                serve_command(args)
            case 'check':
                check_command(args)
            case 'run':
                run_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
