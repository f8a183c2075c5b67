"""Shared default constants for the fynflow library."""

# Default task timeouts in milliseconds.
# Script and process tasks spawn OS processes and may run for minutes;
# http tasks are network calls expected to return quickly.
DEFAULT_SCRIPT_TIMEOUT_MS: int = 300_000  # 5 minutes
DEFAULT_PROCESS_TIMEOUT_MS: int = 300_000  # 5 minutes
DEFAULT_HTTP_TIMEOUT_MS: int = 30_000  # 30 seconds

# Concurrency ceilings. Runs and task executions are bounded independently;
# the task ceiling is shared by all runs combined.
DEFAULT_MAX_CONCURRENT_RUNS: int = 10
DEFAULT_MAX_CONCURRENT_TASKS: int = 5

# Upper bound on triggers fired for one late timer wake-up when catchup is on.
DEFAULT_MAX_CATCH_UP_RUNS: int = 100

# Definition files are recognized by suffix.
DEFAULT_DEFINITION_SUFFIXES: tuple[str, ...] = ('.fyn.yaml', '.fyn.yml', '.fyn.json')
