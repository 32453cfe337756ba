"""Command registration for the clonededup CLI."""
from __future__ import annotations

from typing import Iterable

from . import dedupe, export, report

COMMAND_MODULES: Iterable = (dedupe, report, export)

__all__ = ["COMMAND_MODULES"]
