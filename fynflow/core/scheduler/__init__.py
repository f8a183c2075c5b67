# fynflow/core/scheduler/__init__.py
"""
Scheduler module for cron-driven workflow triggers.

Main components:
- Scheduler (fynflow.core.scheduler.service): timer per scheduled workflow
- parse_cron: five-field cron expression parsing
- calculate_next_run: Next run time calculation

Example usage:
    from fynflow.core.scheduler.service import Scheduler

    scheduler = Scheduler(registry, coordinator)
    await scheduler.start()

The service is not re-exported here: workflow models import the cron
parser from this package, and the service imports those models.
"""

from fynflow.core.scheduler.cron import (
    CronExpression,
    InvalidCronExpression,
    is_valid_cron,
    parse_cron,
)
from fynflow.core.scheduler.calculator import (
    calculate_missed_runs,
    calculate_next_run,
)

__all__ = [
    'CronExpression',
    'InvalidCronExpression',
    'is_valid_cron',
    'parse_cron',
    'calculate_missed_runs',
    'calculate_next_run',
]
