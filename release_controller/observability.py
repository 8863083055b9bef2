import contextvars
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Iterator

from release_controller.redaction import redact_text


request_id_ctx = contextvars.ContextVar("request_id", default="")
_logger = logging.getLogger("relctl.obs")


def get_request_id() -> str:
    return request_id_ctx.get() or ""


@contextmanager
def reconcile_scope(request_id: str = "") -> Iterator[str]:
    """Bind a correlation id for one reconcile pass, keeping an inherited API request id."""
    current = get_request_id()
    value = request_id or current or f"rec-{uuid.uuid4().hex[:12]}"
    token = request_id_ctx.set(value)
    try:
        yield value
    finally:
        request_id_ctx.reset(token)


def _render(value: Any) -> Any:
    if isinstance(value, Enum):
        value = value.value
    elif isinstance(value, datetime):
        value = value.isoformat()
    if isinstance(value, str):
        return redact_text(value)
    return value


def log_event(event: str, **fields: Any) -> None:
    """One ``key=value`` line, keys sorted; ``None`` fields are dropped."""
    fields = {key: _render(value) for key, value in fields.items() if value is not None}
    fields.update(event=event, request_id=get_request_id())
    _logger.info(" ".join(f"{key}={fields[key]}" for key in sorted(fields)))
