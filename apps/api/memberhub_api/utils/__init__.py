"""Utility functions and helpers."""

from memberhub_api.utils.logging import JSONFormatter, configure_json_logging

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
]
