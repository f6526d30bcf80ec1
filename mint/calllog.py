"""
Structured logging of AWS API calls in NDJSON format.

Each provider call made by the provisioning core is recorded as one line in
<log_dir>/calls.ndjson. Logging is fire-and-forget: a failed write is noted
at debug level and never reaches the caller.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CALLS_FILE = "calls.ndjson"


class CallLogger:
    """Records (service, operation, duration, error) for provider calls."""

    def __init__(self, log_dir: Path, debug: bool = False):
        self.log_dir = Path(log_dir)
        self.debug = debug

    @property
    def path(self) -> Path:
        return self.log_dir / CALLS_FILE

    def log(self, service: str, operation: str, duration: float, error: Optional[BaseException] = None) -> None:
        """
        Append one call record.

        Args:
            service: AWS service name (e.g. "ec2")
            operation: API operation (e.g. "RunInstances")
            duration: Call duration in seconds
            error: Exception raised by the call, if any
        """
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "service": service,
            "operation": operation,
            "duration_ms": int(duration * 1000),
            "result": "error" if error is not None else "success",
            "error": str(error) if error is not None else None,
        }

        if self.debug:
            logger.debug(f"{service}.{operation} {record['result']} in {record['duration_ms']}ms")

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            logger.debug(f"Could not write call log {self.path}: {e}")


def read_calls(log_dir: Path) -> List[Dict[str, Any]]:
    """
    Read all call records from a log directory.

    Args:
        log_dir: Directory holding calls.ndjson

    Returns:
        List of records, oldest first
    """
    calls_file = Path(log_dir) / CALLS_FILE

    if not calls_file.exists():
        return []

    records = []
    with open(calls_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return records
