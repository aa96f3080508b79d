"""
CLI runner module.

Provides commands:
- parse: Interpret a CSV file (dry run)
- import: Queue the records of a CSV file
- process: Submit the queue to the form
- status / clear / remove / retry-failed: Queue maintenance
- init-config: Write a default config file
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
