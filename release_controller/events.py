import logging

from release_controller.errors import ReconcileError
from release_controller.observability import log_event
from release_controller.redaction import redact_text
from release_controller.store import iso_now


NORMAL = "Normal"
WARNING = "Warning"

logger = logging.getLogger("relctl.events")


class EventRecorder:
    """Advisory audit trail. Events are written and never read back by the reconciler."""

    def __init__(self, store) -> None:
        self.store = store

    def record(self, obj, event_type: str, reason: str, message: str) -> None:
        event = {
            "created_at": iso_now(),
            "kind": obj.KIND,
            "namespace": obj.metadata.namespace,
            "name": obj.metadata.name,
            "type": event_type,
            "reason": reason,
            "message": redact_text(message),
        }
        log_event(
            "object.event",
            kind=event["kind"],
            namespace=event["namespace"],
            name=event["name"],
            type=event_type,
            reason=reason,
            message=event["message"],
        )
        try:
            self.store.insert_event(event)
        except ReconcileError as exc:
            logger.warning("event.persist_failed reason=%s error=%s", reason, redact_text(str(exc)))

    def normal(self, obj, reason: str, message: str) -> None:
        self.record(obj, NORMAL, reason, message)

    def warning(self, obj, reason: str, message: str) -> None:
        self.record(obj, WARNING, reason, message)
