"""Command-line interface (``mercato-scheduler``)."""

from mercato_scheduler.cli.app import app

__all__ = ["app"]
