"""Structured operation logging for odooctl commands.

Every CLI operation produces one JSON object appended to
``<tool_logs_dir>/operations.jsonl``. Records carry the command name, its
arguments and target, the individual steps performed and the final result.
The same summary is mirrored to the standard library logger
``odooctl.operations`` so it also reaches journald when run from a unit.

Logging never interferes with the command being logged: if the log directory
cannot be created or a write fails, the logger disables itself and later
operations run without a log file.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"

_LOGGER = logging.getLogger("odooctl.operations")


_SECRET_KEYS = ("password", "passwd", "secret", "token")
REDACTED = "***"


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(lowered == word or lowered.endswith(f"_{word}") for word in _SECRET_KEYS)


def _sanitise(value: object) -> object:
    """Return a JSON-safe representation of *value* with secret keys redacted."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {
            str(key): REDACTED if _is_secret_key(str(key)) and item else _sanitise(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


@dataclass
class OperationScope:
    """Mutable record for a single logged operation."""

    command: str
    args: dict[str, object]
    target: dict[str, object] | None
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an individual step performed during the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitise(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed; *errors* defaults to ``[message]``."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings is not None:
            result["warnings"] = [str(item) for item in warnings]
        if errors is not None:
            result["errors"] = [str(item) for item in errors]
        if changed is not None:
            result["changed"] = changed
        if rc is not None:
            result["rc"] = rc
        if context is not None:
            result["context"] = _sanitise(dict(context))
        self.result = result

    def to_record(self, finished_at: datetime, duration_ms: int) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        return {
            "id": self.operation_id,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target) if self.target is not None else None,
            "started_at": self.started_at.isoformat(),
            "finished_at": finished_at.isoformat(),
            "duration_ms": duration_ms,
            "steps": self.steps,
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to a JSON Lines file."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable the logger if it cannot be created."""
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _LOGGER.warning("Operation log disabled: cannot create %s (%s)", self._log_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Context manager yielding an :class:`OperationScope` for *command*.

        When the block exits without recording a result, the operation is
        marked successful, or failed if an exception escaped.
        """
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target) if target is not None else None,
        )
        start = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        else:
            if scope.result is None:
                scope.success(f"{command} completed.")
        finally:
            duration_ms = int((time.monotonic() - start) * 1000)
            self._write(scope.to_record(datetime.now(UTC), duration_ms))

    def _write(self, record: dict[str, object]) -> None:
        result = record.get("result") or {}
        status = result.get("status") if isinstance(result, dict) else None
        level = logging.ERROR if status == "error" else logging.INFO
        _LOGGER.log(level, "%s: %s", record["command"], status)

        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            _LOGGER.warning(
                "Operation log disabled: cannot write %s (%s)", self._operations_log_path, exc
            )
            self._enabled = False


__all__ = ["OPERATIONS_LOG_NAME", "OperationScope", "StructuredLogger"]
