"""daytrack - time tracking and daily reports for Linear issues."""

__version__ = "0.1.0"
