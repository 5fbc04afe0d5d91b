"""
scheduler/ — Activity Scheduler

Single-loop state machine that interleaves weighted activities toward their
numeric targets, with sticky dwell, scheduled/random breaks and resumable
progress.

Import from the modules directly:
    from autocycle.scheduler.scheduler import ActivityScheduler
    from autocycle.scheduler.types import ActivityConfig, WorkResult
"""
