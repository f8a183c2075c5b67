# fynflow/core/scheduler/calculator.py
from __future__ import annotations

from datetime import datetime, timezone

from fynflow.core.logging import get_logger
from fynflow.core.scheduler.cron import CronExpression, parse_cron

logger = get_logger('scheduler')


def _as_cron(expression: str | CronExpression) -> CronExpression:
    if isinstance(expression, CronExpression):
        return expression
    return parse_cron(expression)


def calculate_next_run(
    expression: str | CronExpression, from_time: datetime
) -> datetime:
    """
    Calculate the next run time for a cron expression.

    Args:
        expression: Cron expression string or an already parsed CronExpression
        from_time: Calculate next run strictly after this time (must be tz-aware)

    Returns:
        Next run time as UTC-aware datetime

    Raises:
        ValueError: If from_time is naive or the expression is invalid
    """
    if from_time.tzinfo is None:
        raise ValueError('from_time must be timezone-aware')

    next_run = _as_cron(expression).next_after(from_time)

    if next_run.tzinfo is None:
        raise RuntimeError('Calculated next_run is not timezone-aware')

    return next_run.astimezone(timezone.utc)


def calculate_missed_runs(
    expression: str | CronExpression,
    first_due_run: datetime,
    current_time: datetime,
    max_runs: int,
    *,
    label: str = '',
) -> list[datetime]:
    """
    Calculate all due slots between first due slot and current time (inclusive).

    Args:
        expression: Cron expression
        first_due_run: First due slot
        current_time: Current time
        max_runs: Upper bound on slots returned in one pass
        label: Name used in log messages (workflow id)

    Returns:
        List of due slot times, sorted chronologically
    """
    cron = _as_cron(expression)
    due_runs: list[datetime] = []
    if first_due_run > current_time:
        return due_runs

    cursor = first_due_run
    while cursor <= current_time and len(due_runs) < max_runs:
        due_runs.append(cursor)
        next_run = calculate_next_run(cron, cursor)
        if next_run <= cursor:
            logger.error(
                "Non-monotonic next_run calculated for '%s': current=%s next=%s",
                label or cron.expression,
                cursor,
                next_run,
            )
            break
        cursor = next_run

    if cursor <= current_time and len(due_runs) >= max_runs:
        logger.warning(
            "Catch-up cap reached for '%s' (cap=%s), backlog dropped",
            label or cron.expression,
            max_runs,
        )

    return due_runs
