import logging
from dataclasses import dataclass
from typing import Dict, Optional, Type

from release_controller.errors import NotFoundError, PartialFailureError, ReconcileError
from release_controller.events import EventRecorder
from release_controller.health import HealthChecker
from release_controller.models import Deployment, Project, VersionPolicy, utc_now
from release_controller.observability import log_event, reconcile_scope
from release_controller.ownership import is_owned_by
from release_controller.policies import (
    DeclarativePolicy,
    ExternalPolicy,
    GitOpsLatestPolicy,
    GitOpsPolicy,
    PolicyContext,
    PolicyEngine,
)
from release_controller.preview_policies import AutoPromotePolicy, LatestPreviewPolicy
from release_controller.promotion import PromotionProtocol
from release_controller.pruner import Pruner
from release_controller.redaction import redact_text, sanitize_error_message
from release_controller.release_index import ReleaseIndex
from release_controller.release_set import ReleaseSetReconciler
from release_controller.status import StatusAggregator


logger = logging.getLogger("relctl.controller")

ENGINES: Dict[VersionPolicy, Type[PolicyEngine]] = {
    VersionPolicy.DECLARATIVE: DeclarativePolicy,
    VersionPolicy.GITOPS: GitOpsPolicy,
    VersionPolicy.GITOPS_LATEST: GitOpsLatestPolicy,
    VersionPolicy.LATEST_PREVIEW: LatestPreviewPolicy,
    VersionPolicy.AUTO_PROMOTE: AutoPromotePolicy,
    VersionPolicy.EXTERNAL: ExternalPolicy,
}


@dataclass
class ReconcileResult:
    requeue_after: Optional[float] = None
    error: Optional[ReconcileError] = None
    promoted: bool = False

    @property
    def ready(self) -> bool:
        return self.error is None


@dataclass
class ControllerSettings:
    default_revision_limit: int = 10
    conflict_max_attempts: int = 5
    conflict_retry_delay_seconds: float = 0.1
    short_requeue_seconds: float = 10.0
    medium_requeue_seconds: float = 30.0
    poll_requeue_seconds: float = 30.0
    external_sync_seconds: float = 300.0
    health_check_timeout_seconds: float = 30.0
    validation_history_limit: int = 50

    @classmethod
    def from_settings(cls, settings) -> "ControllerSettings":
        return cls(
            default_revision_limit=settings.revision_history_limit,
            conflict_max_attempts=settings.conflict_max_attempts,
            conflict_retry_delay_seconds=settings.conflict_retry_delay_seconds,
            short_requeue_seconds=settings.short_requeue_seconds,
            medium_requeue_seconds=settings.medium_requeue_seconds,
            poll_requeue_seconds=settings.poll_requeue_seconds,
            external_sync_seconds=settings.external_sync_seconds,
            health_check_timeout_seconds=settings.health_check_timeout_seconds,
            validation_history_limit=settings.validation_history_limit,
        )


class ProjectReconciler:
    """One reconciliation pass per call: policy, then pruning, then status.

    Each stage re-lists the store instead of trusting objects from the stage
    before it, so identifiers assigned in between are always seen.
    """

    def __init__(
        self,
        store,
        recorder: Optional[EventRecorder] = None,
        settings: Optional[ControllerSettings] = None,
        health_checker=None,
        clock=utc_now,
    ) -> None:
        self.store = store
        self.settings = settings or ControllerSettings()
        self.recorder = recorder or EventRecorder(store)
        self.index = ReleaseIndex(store)
        self.release_set = ReleaseSetReconciler(store, self.recorder, self.index)
        self.promotion = PromotionProtocol(
            store,
            self.recorder,
            self.index,
            max_attempts=self.settings.conflict_max_attempts,
            retry_delay=self.settings.conflict_retry_delay_seconds,
            history_limit=self.settings.validation_history_limit,
        )
        self.pruner = Pruner(store, self.index, default_limit=self.settings.default_revision_limit)
        self.aggregator = StatusAggregator(
            store,
            self.index,
            max_attempts=self.settings.conflict_max_attempts,
            retry_delay=self.settings.conflict_retry_delay_seconds,
        )
        self.context = PolicyContext(
            store=store,
            recorder=self.recorder,
            index=self.index,
            release_set=self.release_set,
            promotion=self.promotion,
            poll_requeue_seconds=self.settings.poll_requeue_seconds,
            external_sync_seconds=self.settings.external_sync_seconds,
            health_check_timeout_seconds=self.settings.health_check_timeout_seconds,
            health_checker=health_checker or HealthChecker(),
            clock=clock,
        )

    def engine_for(self, project: Project) -> PolicyEngine:
        return ENGINES[project.policy](self.context)

    def requeue_for(self, error: ReconcileError) -> float:
        if error.requeue == "short":
            return self.settings.short_requeue_seconds
        return self.settings.medium_requeue_seconds

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        with reconcile_scope():
            try:
                project = self.store.get(Project, namespace, name)
            except NotFoundError:
                log_event("reconcile.project_gone", namespace=namespace, project=name)
                return ReconcileResult()
            if project.metadata.deletion_timestamp is not None:
                self.delete_project(namespace, name)
                return ReconcileResult()
            return self._reconcile_project(project)

    def _reconcile_project(self, project: Project) -> ReconcileResult:
        engine = self.engine_for(project)
        result = ReconcileResult()
        log_event("reconcile.started", project=project.metadata.name, policy=engine.policy)
        try:
            outcome = engine.reconcile(project)
            result.requeue_after = outcome.requeue_after
            result.promoted = outcome.promoted
        except ReconcileError as exc:
            result.error = exc
            result.requeue_after = self.requeue_for(exc)
            self.recorder.warning(project, engine.failure_reason, sanitize_error_message(str(exc)))
            log_event(
                "reconcile.policy_failed",
                project=project.metadata.name,
                policy=engine.policy,
                code=exc.code,
                error=str(exc),
            )

        try:
            self.pruner.prune(project)
        except ReconcileError as exc:
            logger.warning("reconcile.prune_failed project=%s error=%s", project.metadata.name, redact_text(str(exc)))

        try:
            self.aggregator.aggregate(project, engine.policy, result.error)
        except NotFoundError:
            return ReconcileResult()
        except ReconcileError as exc:
            logger.warning("reconcile.status_failed project=%s error=%s", project.metadata.name, redact_text(str(exc)))
            if result.error is None:
                result.error = exc
                result.requeue_after = self.requeue_for(exc)

        log_event(
            "reconcile.finished",
            project=project.metadata.name,
            ready=result.ready,
            requeue_after=result.requeue_after,
        )
        return result

    def delete_project(self, namespace: str, name: str) -> int:
        """Delete the Project's Deployments, then the Project itself.

        Child deletes are best effort: failures are collected and logged, and
        the Project record is removed regardless.
        """
        with reconcile_scope():
            project = self.store.get(Project, namespace, name)
            errors = []
            deleted = 0
            for deployment in self.store.list(Deployment, namespace):
                if not is_owned_by(deployment, project):
                    continue
                try:
                    self.store.delete(deployment)
                    deleted += 1
                except NotFoundError:
                    continue
                except ReconcileError as exc:
                    errors.append(exc)
            if errors:
                failure = PartialFailureError(errors, context=f"cleanup {name}")
                logger.warning("project.cleanup_partial project=%s error=%s", name, redact_text(str(failure)))
                self.recorder.warning(project, "DeleteFailed", sanitize_error_message(str(failure)))
            try:
                self.store.delete(project)
            except NotFoundError:
                logger.info("project.already_deleted project=%s", name)
            log_event("project.deleted", namespace=namespace, project=name, deployments=deleted)
            return deleted
