#!/usr/bin/env python3
"""
Structured Logging and Metrics
==============================
Provides:
- JSON log formatting for the rotating log file
- Per-operation outcome counters for the trading engines
- Rich table rendering of the collected metrics
"""

import json
import logging
import logging.handlers
import threading
from typing import Dict, Any, Optional
from datetime import datetime
from pathlib import Path

from rich.table import Table
from rich import box


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'source': {
                'file': record.filename,
                'line': record.lineno,
                'function': record.funcName
            }
        }

        extra = getattr(record, 'extra_data', None)
        if extra:
            log_data['extra'] = extra

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def build_rotating_handler(
    log_file: str,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Handler:
    """Size-based rotating file handler (10MB x 5 by default)."""
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )


class MetricsCollector:
    """
    Thread-safe counters of operation outcomes.

    Operations are free-form names such as ``buy``, ``sell``, ``sweep``,
    ``fund`` or ``exhausted``; each keeps a success and failure count.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, Dict[str, int]] = {}
        self.started_at = datetime.now()

    def record(self, operation: str, success: bool = True, count: int = 1):
        with self._lock:
            entry = self._counts.setdefault(operation, {'success': 0, 'failure': 0})
            entry['success' if success else 'failure'] += count

    def count(self, operation: str, success: Optional[bool] = None) -> int:
        with self._lock:
            entry = self._counts.get(operation)
            if not entry:
                return 0
            if success is None:
                return entry['success'] + entry['failure']
            return entry['success' if success else 'failure']

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            operations = {}
            for op, entry in self._counts.items():
                total = entry['success'] + entry['failure']
                operations[op] = {
                    'total': total,
                    'success': entry['success'],
                    'failure': entry['failure'],
                    'success_rate': round(entry['success'] / total * 100, 2) if total else 0,
                }
            return {
                'since': self.started_at.isoformat(),
                'operations': operations,
            }

    def clear(self):
        with self._lock:
            self._counts.clear()

    def save_to_file(self, filepath: str):
        """Save the summary to a JSON file."""
        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w') as f:
            json.dump(self.get_summary(), f, indent=2)

    def to_table(self, title: str = "Engine Metrics") -> Table:
        table = Table(title=title, box=box.ROUNDED)
        table.add_column("Operation", style="cyan")
        table.add_column("Total", justify="right")
        table.add_column("Success", justify="right", style="green")
        table.add_column("Failure", justify="right", style="red")
        table.add_column("Rate", justify="right")

        for op, stats in sorted(self.get_summary()['operations'].items()):
            table.add_row(
                op,
                str(stats['total']),
                str(stats['success']),
                str(stats['failure']),
                f"{stats['success_rate']}%"
            )
        return table
