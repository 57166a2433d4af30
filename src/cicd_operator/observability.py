from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal


_LOGGER_NAME: Final[str] = "cicd_operator"
_MAX_VALUE_LEN: Final[int] = 120
_LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_EVENT_ATTR: Final[str] = "cicd_event"

# Events still shown at "low" verbosity; warnings and errors always pass.
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "approval_label_set",
        "approval_label_deleted",
        "approval_unauthorized",
        "git_rate_limited",
        "job_failed",
        "pipeline_run_created",
        "pipeline_run_cancelled",
        "config_webhook_registered",
        "config_webhook_deleted",
    }
)
_RESOURCE_FIELDS: ContextVar[tuple[tuple[str, str], ...]] = ContextVar(
    "cicd_operator_resource_fields", default=()
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    """Install the operator's handlers on the ``cicd_operator`` logger.

    ``None``/``False`` silences the logger, ``True``/``"high"`` logs every event
    to stderr and ``"low"`` keeps only the curated events plus warnings. When
    ``state_dir`` is set the same records also go to ``<state_dir>/logs/<UTC date>.log``.
    Calling it again replaces the previous handlers.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    mode = _verbose_mode(verbose)
    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(_UtcDailyFileHandler(base_dir=state_dir))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        if mode == "low":
            handler.addFilter(_low_verbosity_filter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields), extra={_EVENT_ATTR: event})


def log_warning(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_build_event_message(event=event, fields=fields), extra={_EVENT_ATTR: event})


@contextmanager
def logging_resource_context(kind: str, namespace: str, name: str) -> Iterator[None]:
    """Tag every event logged inside the block with the resource being reconciled.

    Reconcile passes for different resources run concurrently on different
    threads, so the fields live in a context variable rather than on the logger.
    """
    token = _RESOURCE_FIELDS.set(
        (("kind", kind), ("resource", f"{namespace}/{name}")),
    )
    try:
        yield
    finally:
        _RESOURCE_FIELDS.reset(token)


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    merged: dict[str, object] = dict(_RESOURCE_FIELDS.get())
    merged.update(fields)
    rendered = [("event", event), *sorted(merged.items())]
    return " ".join(f"{key}={_render_value(value)}" for key, value in rendered)


def _render_value(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = str(value).lower()
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, str):
        text = " ".join(value.split())
        if len(text) > _MAX_VALUE_LEN:
            text = text[:_MAX_VALUE_LEN] + "..."
        text = text or "<empty>"
    else:
        text = f"<{type(value).__name__}>"

    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    mode = verbose.strip().lower()
    if mode == "low":
        return "low"
    if mode == "high":
        return "high"
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _low_verbosity_filter(record: logging.LogRecord) -> bool:
    if record.levelno >= logging.WARNING:
        return True
    return getattr(record, _EVENT_ATTR, None) in _LOW_VERBOSITY_EVENTS


def _utc_date() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class _UtcDailyFileHandler(logging.FileHandler):
    """Append records to ``logs/YYYY-MM-DD.log``, switching files at UTC midnight."""

    def __init__(self, *, base_dir: Path) -> None:
        self._logs_dir = base_dir / "logs"
        self._active_date = _utc_date()
        super().__init__(self._log_path(self._active_date), encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        date_key = _utc_date()
        if date_key != self._active_date:
            self.acquire()
            try:
                if self.stream is not None:
                    self.stream.close()
                    self.stream = None
                self.baseFilename = self._log_path(date_key)
                self._active_date = date_key
            finally:
                self.release()
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            super().emit(record)
        except OSError:
            self.handleError(record)

    def _log_path(self, date_key: str) -> str:
        return str((self._logs_dir / f"{date_key}.log").absolute())
