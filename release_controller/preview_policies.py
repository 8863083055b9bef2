import logging
from typing import List, Optional

from release_controller.errors import ReconcileError
from release_controller.health import HealthChecker, HealthCheckFailed
from release_controller.models import (
    AutoPromoteConfig,
    Deployment,
    LabelSelector,
    LatestPreviewConfig,
    PreviewDeploymentInfo,
    Project,
    VersionPolicy,
    as_utc,
)
from release_controller.observability import log_event
from release_controller.ownership import deployment_version_name
from release_controller.policies import PolicyEngine, PolicyOutcome, Resolution
from release_controller.promotion import (
    is_current_production,
    is_production,
    is_succeeded,
    validate_for_promotion,
)
from release_controller.store import update_with_conflict_retry


logger = logging.getLogger("relctl.policies")


def _recency_key(deployment: Deployment):
    finished = deployment.status.finished_at
    # Deployments without a finish time rank below every finished one.
    return (finished is not None, as_utc(finished), as_utc(deployment.metadata.creation_timestamp))


def select_latest(deployments: List[Deployment], selector: Optional[LabelSelector] = None) -> Optional[Deployment]:
    candidates = [
        d
        for d in deployments
        if is_succeeded(d) and (selector is None or selector.matches(d.metadata.labels))
    ]
    if not candidates:
        return None
    return max(candidates, key=_recency_key)


class LatestPreviewPolicy(PolicyEngine):
    """Track the most recent succeeded Deployment; optionally make it production.

    Production Deployments stay in the candidate set. Dropping them would make
    the previous release look newest again right after a promotion.
    """

    policy = VersionPolicy.LATEST_PREVIEW
    failure_reason = "LatestPreviewReconcileFailed"
    validated_by = "latestPreview"

    def _selector(self, project: Project) -> Optional[LabelSelector]:
        config: LatestPreviewConfig = project.spec.version_management
        return config.label_selector

    def _auto_promote(self, project: Project) -> bool:
        return project.spec.version_management.auto_promote

    def select(self, project: Project, deployments: List[Deployment]) -> Optional[Deployment]:
        return select_latest(deployments, self._selector(project))

    def resolve(self, project: Project, deployments: List[Deployment]) -> Resolution:
        latest = self.select(project, deployments)
        resolution = Resolution(requeue_after=self.ctx.poll_requeue_seconds)
        if latest is None:
            return resolution
        resolution.current_version = deployment_version_name(latest)
        if self._auto_promote(project):
            resolution.production_version = resolution.current_version
        return resolution

    def reconcile(self, project: Project) -> PolicyOutcome:
        deployments = self.ctx.index.project_deployments(project)
        resolution = self.resolve(project, deployments)
        outcome = PolicyOutcome(resolution=resolution, requeue_after=resolution.requeue_after)
        latest = self.select(project, deployments)
        if latest is None:
            logger.debug("policy.latest_preview.none project=%s", project.metadata.name)
            return outcome
        self.record_preview(project, latest)
        if not self._auto_promote(project):
            return outcome
        validate_for_promotion(latest)
        outcome.promoted = self.ctx.promotion.ensure_production(
            project, latest, self.validated_by, reason="AutoPromoted"
        )
        return outcome

    def record_preview(self, project: Project, deployment: Deployment) -> None:
        info = PreviewDeploymentInfo(
            version=deployment_version_name(deployment) or "",
            deployment_id=deployment.status.deployment_id,
            deployment_name=deployment.metadata.name,
            url=deployment.status.url,
            finished_at=deployment.status.finished_at,
        )
        if project.status.preview_deployment == info:
            return

        def mutate(current: Project) -> None:
            current.status.preview_deployment = info

        try:
            updated = update_with_conflict_retry(
                self.ctx.store,
                project,
                mutate,
                max_attempts=self.ctx.promotion.max_attempts,
                retry_delay=self.ctx.promotion.retry_delay,
            )
        except ReconcileError as exc:
            logger.warning("policy.preview_status_failed project=%s error=%s", project.metadata.name, exc)
            return
        project.metadata.resource_version = updated.metadata.resource_version


class AutoPromotePolicy(LatestPreviewPolicy):
    """Latest-succeeded selection plus a soak delay and an optional health check."""

    policy = VersionPolicy.AUTO_PROMOTE
    failure_reason = "AutoPromoteReconcileFailed"
    validated_by = "autoPromote"

    def _selector(self, project: Project) -> Optional[LabelSelector]:
        config: AutoPromoteConfig = project.spec.version_management
        return config.label_selector

    def _auto_promote(self, project: Project) -> bool:
        return True

    def remaining_delay(self, deployment: Deployment, config: AutoPromoteConfig) -> float:
        if not config.promote_after_seconds:
            return 0.0
        reference = deployment.status.finished_at or deployment.metadata.creation_timestamp
        if reference is None:
            return 0.0
        elapsed = (as_utc(self.ctx.clock()) - as_utc(reference)).total_seconds()
        return max(config.promote_after_seconds - elapsed, 0.0)

    def reconcile(self, project: Project) -> PolicyOutcome:
        config: AutoPromoteConfig = project.spec.version_management
        deployments = self.ctx.index.project_deployments(project)
        resolution = self.resolve(project, deployments)
        outcome = PolicyOutcome(resolution=resolution, requeue_after=resolution.requeue_after)
        latest = self.select(project, deployments)
        if latest is None:
            return outcome
        self.record_preview(project, latest)

        if is_current_production(project, latest) and is_production(latest):
            self.ctx.promotion.demote_others(project, latest)
            return outcome

        wait = self.remaining_delay(latest, config)
        if wait > 0:
            log_event(
                "policy.auto_promote.waiting",
                project=project.metadata.name,
                deployment=latest.metadata.name,
                wait_seconds=round(wait, 1),
            )
            outcome.requeue_after = wait
            return outcome

        if config.require_health_check:
            url = config.health_check_url or latest.status.url or ""
            timeout = config.health_check_timeout_seconds or self.ctx.health_check_timeout_seconds
            checker = self.ctx.health_checker or HealthChecker()
            try:
                checker.check(url, timeout)
            except HealthCheckFailed as exc:
                self.ctx.recorder.warning(
                    project,
                    "HealthCheckFailed",
                    f"Health check failed for deployment {latest.metadata.name}: {exc}",
                )
                return outcome

        validate_for_promotion(latest)
        outcome.promoted = self.ctx.promotion.ensure_production(
            project, latest, self.validated_by, reason="AutoPromoted"
        )
        return outcome
