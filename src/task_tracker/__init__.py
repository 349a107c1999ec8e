"""Personal task tracker: status workflow, filtering, history and comments over a record store."""

__version__ = "1.0.0"
