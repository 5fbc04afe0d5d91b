"""observability/ — structured logging for autocycle."""

from autocycle.observability.logger import bind_run, clear_run, get_logger, setup_logging

__all__ = ["bind_run", "clear_run", "get_logger", "setup_logging"]
