import logging
from collections import deque
from typing import List, Optional

from release_controller.errors import ReconcileError, ValidationFailedError
from release_controller.events import EventRecorder
from release_controller.models import (
    Deployment,
    DeploymentState,
    Environment,
    Project,
    ValidationRecord,
    utc_now,
)
from release_controller.observability import log_event
from release_controller.ownership import deployment_version_name
from release_controller.release_index import ReleaseIndex
from release_controller.store import update_with_conflict_retry


logger = logging.getLogger("relctl.promotion")


def is_succeeded(deployment: Deployment) -> bool:
    return deployment.status.state == DeploymentState.SUCCEEDED


def is_production(deployment: Deployment) -> bool:
    return deployment.spec.environment == Environment.PRODUCTION


def validate_for_promotion(deployment: Deployment) -> None:
    if not is_succeeded(deployment):
        state = deployment.status.state.value if deployment.status.state else "unknown"
        raise ValidationFailedError(
            ValidationFailedError.NOT_SUCCEEDED,
            f"deployment {deployment.metadata.name} is not succeeded (state={state})",
        )
    if not deployment.status.deployment_id:
        raise ValidationFailedError(
            ValidationFailedError.MISSING_EXTERNAL_ID,
            f"deployment {deployment.metadata.name} has no deployment id yet",
        )


def is_current_production(project: Project, deployment: Deployment) -> bool:
    current = project.status.current_production
    deployment_id = deployment.status.deployment_id
    return bool(current and deployment_id and current.deployment_id == deployment_id)


def record_validation(history: List[ValidationRecord], record: ValidationRecord, limit: int) -> List[ValidationRecord]:
    """Newest first; the oldest entry falls off once ``limit`` is reached."""
    ring = deque(history[: max(limit - 1, 0)], maxlen=limit)
    ring.appendleft(record)
    return list(ring)


class PromotionProtocol:
    """Environment flips that drive a Project toward a single production Deployment.

    Promotion never calls the hosting backend. It rewrites the Deployment's
    declared environment and leaves the backend call to whatever watches
    Deployment objects; the flip is valid for artifacts that were never
    production before, which a native rollback call is not.
    """

    def __init__(
        self,
        store,
        recorder: EventRecorder,
        index: ReleaseIndex,
        max_attempts: int = 5,
        retry_delay: float = 0.1,
        history_limit: int = 50,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.index = index
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.history_limit = history_limit

    def _set_environment(self, deployment: Deployment, environment: Environment) -> Deployment:
        def mutate(current: Deployment) -> None:
            current.spec.environment = environment

        return update_with_conflict_retry(
            self.store,
            deployment,
            mutate,
            max_attempts=self.max_attempts,
            retry_delay=self.retry_delay,
        )

    def promote_to_production(self, deployment: Deployment) -> bool:
        if is_production(deployment):
            return False
        updated = self._set_environment(deployment, Environment.PRODUCTION)
        deployment.spec.environment = updated.spec.environment
        deployment.metadata.resource_version = updated.metadata.resource_version
        log_event("promotion.promoted", deployment=deployment.metadata.name, version=deployment_version_name(deployment))
        return True

    def demote_to_preview(self, deployment: Deployment) -> bool:
        if not is_production(deployment):
            return False
        updated = self._set_environment(deployment, Environment.PREVIEW)
        deployment.spec.environment = updated.spec.environment
        deployment.metadata.resource_version = updated.metadata.resource_version
        log_event("promotion.demoted", deployment=deployment.metadata.name, version=deployment_version_name(deployment))
        return True

    def demote_others(self, project: Project, keep: Deployment) -> List[str]:
        """Demote every other production Deployment of the Project; re-lists first."""
        demoted = []
        for deployment in self.index.project_deployments(project):
            if deployment.metadata.name == keep.metadata.name or not is_production(deployment):
                continue
            if self.demote_to_preview(deployment):
                demoted.append(deployment.metadata.name)
                self.recorder.normal(
                    project,
                    "ProductionDemoted",
                    f"Demoted deployment {deployment.metadata.name} "
                    f"(version {deployment_version_name(deployment)}) to preview",
                )
        return demoted

    def ensure_production(
        self,
        project: Project,
        deployment: Deployment,
        validated_by: str,
        reason: str = "ProductionPromoted",
    ) -> bool:
        """Promote ``deployment`` and demote the rest. Returns whether it was promoted.

        Skipped entirely when the candidate already is the recorded current
        production, so a steady state costs no writes per tick.
        The validation record is written before the demotions, so a failed
        demotion does not lose it.
        """
        if is_current_production(project, deployment) and is_production(deployment):
            self.demote_others(project, deployment)
            return False
        promoted = self.promote_to_production(deployment)
        if promoted:
            self.record_promotion(project, deployment, validated_by, reason)
        self.demote_others(project, deployment)
        return promoted

    def record_promotion(
        self,
        project: Project,
        deployment: Deployment,
        validated_by: str,
        reason: str = "ProductionPromoted",
    ) -> None:
        self.recorder.normal(
            project,
            reason,
            f"Promoted deployment {deployment.metadata.name} "
            f"(version {deployment_version_name(deployment)}) to production",
        )
        self.append_validation(project, deployment, validated_by)

    def append_validation(self, project: Project, deployment: Deployment, validated_by: str) -> Optional[Project]:
        """Record a passed validation. Failures are logged; the promotion already happened."""
        record = ValidationRecord(
            version_name=deployment_version_name(deployment) or "",
            deployment_id=deployment.status.deployment_id or "",
            validated_at=utc_now(),
            validated_by=validated_by,
        )

        def mutate(current: Project) -> None:
            current.status.validation_history = record_validation(
                current.status.validation_history, record, self.history_limit
            )

        try:
            updated = update_with_conflict_retry(
                self.store,
                project,
                mutate,
                max_attempts=self.max_attempts,
                retry_delay=self.retry_delay,
            )
        except ReconcileError as exc:
            logger.warning(
                "promotion.validation_record_failed project=%s version=%s error=%s",
                project.metadata.name,
                record.version_name,
                exc,
            )
            return None
        project.status.validation_history = updated.status.validation_history
        project.metadata.resource_version = updated.metadata.resource_version
        return updated
