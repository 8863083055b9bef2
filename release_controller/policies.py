"""Version-management policy engines.

Every engine answers the same two questions for a Project, which version(s)
should exist and which Deployment should be production, through
``resolve(project, deployments)``. ``reconcile(project)`` then drives the
release set and the promotion protocol from that answer. Engines raise
``ReconcileError`` subclasses; the caller turns them into conditions, events
and a requeue delay.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from release_controller.errors import NotFoundError, ValidationFailedError
from release_controller.events import EventRecorder
from release_controller.models import (
    Deployment,
    Environment,
    ExternalConfig,
    GitOpsConfig,
    GitOpsLatestConfig,
    Project,
    ValidationResult,
    Version,
    VersionPolicy,
    utc_now,
)
from release_controller.observability import log_event
from release_controller.ownership import deployment_version_name
from release_controller.promotion import PromotionProtocol, is_production, is_succeeded, validate_for_promotion
from release_controller.release_index import ReleaseIndex, find_version
from release_controller.release_set import (
    LATEST_TARGET,
    ReleaseSetReconciler,
    ReleaseSetResult,
    resolve_versions,
)


@dataclass
class Resolution:
    versions: List[Version] = field(default_factory=list)
    current_version: Optional[str] = None
    production_version: Optional[str] = None
    requeue_after: Optional[float] = None
    environment: Environment = Environment.PREVIEW


@dataclass
class PolicyOutcome:
    resolution: Resolution
    release_set: ReleaseSetResult = field(default_factory=ReleaseSetResult)
    promoted: bool = False
    requeue_after: Optional[float] = None


@dataclass
class PolicyContext:
    store: object
    recorder: EventRecorder
    index: ReleaseIndex
    release_set: ReleaseSetReconciler
    promotion: PromotionProtocol
    poll_requeue_seconds: float = 30.0
    external_sync_seconds: float = 300.0
    health_check_timeout_seconds: float = 30.0
    health_checker: Optional[object] = None
    clock: Callable[[], datetime] = utc_now


class PolicyEngine:
    policy: VersionPolicy
    failure_reason = "VersionReconcileFailed"
    validated_by = ""

    def __init__(self, ctx: PolicyContext) -> None:
        self.ctx = ctx

    def resolve(self, project: Project, deployments: List[Deployment]) -> Resolution:
        raise NotImplementedError

    def reconcile(self, project: Project) -> PolicyOutcome:
        raise NotImplementedError

    def _materialize(self, project: Project, resolution: Resolution) -> ReleaseSetResult:
        return self.ctx.release_set.reconcile(project, resolution.versions, resolution.environment)


class DeclarativePolicy(PolicyEngine):
    """Every declared version gets a Deployment; the named target is production."""

    policy = VersionPolicy.DECLARATIVE
    validated_by = "declarative"

    def resolve(self, project: Project, deployments: List[Deployment]) -> Resolution:
        resolved = resolve_versions(project)
        target = resolved.production_target
        if target == LATEST_TARGET:
            if not resolved.versions:
                self.ctx.recorder.warning(
                    project, "ProductionTargetInvalid", "productionTarget is 'latest' but no versions are declared"
                )
                raise ValidationFailedError(
                    ValidationFailedError.PRODUCTION_TARGET_INVALID,
                    "productionTarget 'latest' requires at least one declared version",
                )
            target = resolved.versions[0].name
        return Resolution(
            versions=resolved.versions,
            current_version=resolved.versions[0].name if resolved.versions else None,
            production_version=target or None,
        )

    def reconcile(self, project: Project) -> PolicyOutcome:
        resolution = self.resolve(project, [])
        outcome = PolicyOutcome(resolution=resolution)
        outcome.release_set = self._materialize(project, resolution)
        if not resolution.production_version:
            return outcome

        target = find_version(self.ctx.index.managed_deployments(project), resolution.production_version)
        if target is None:
            self.ctx.recorder.warning(
                project,
                "ProductionTargetNotFound",
                f"No managed deployment for production target {resolution.production_version}",
            )
            raise NotFoundError(f"production target version {resolution.production_version} not found")
        outcome.promoted = self.ctx.promotion.ensure_production(project, target, self.validated_by)
        return outcome


def is_version_validated(project: Project, deployment: Deployment, validation_labels: dict) -> bool:
    """The GitOps preview gate: succeeded, labelled, and seen passing in preview.

    Only the backend-reported environment counts. A Deployment whose status
    has not been mirrored yet is not validated by its declared environment alone.
    """
    if not is_succeeded(deployment):
        return False
    for key, value in (validation_labels or {}).items():
        if deployment.metadata.labels.get(key) != value:
            return False
    names = {deployment.spec.version_name, deployment.status.version_name, deployment_version_name(deployment)}
    names.discard(None)
    for record in project.status.validation_history:
        if record.version_name in names and record.validation_result == ValidationResult.PASSED:
            return True
    return deployment.status.environment == Environment.PREVIEW


class GitOpsPolicy(PolicyEngine):
    """Two-stage flow: a preview version, then an explicitly named production version."""

    policy = VersionPolicy.GITOPS
    failure_reason = "GitOpsReconcileFailed"
    validated_by = "gitops"

    def resolve(self, project: Project, deployments: List[Deployment]) -> Resolution:
        resolved = resolve_versions(project)
        return Resolution(
            versions=resolved.versions,
            current_version=resolved.preview_version,
            production_version=resolved.production_version,
        )

    def reconcile(self, project: Project) -> PolicyOutcome:
        config: GitOpsConfig = project.spec.version_management
        resolution = self.resolve(project, [])
        outcome = PolicyOutcome(resolution=resolution)
        outcome.release_set = self._materialize(project, resolution)
        version = resolution.production_version
        if not version:
            return outcome

        deployment = self.ctx.index.find_by_version(project, version)
        if deployment is None:
            raise NotFoundError(f"version {version} not found, cannot promote to production")
        if config.require_preview_validation and not is_version_validated(
            project, deployment, config.validation_labels
        ):
            raise ValidationFailedError(
                ValidationFailedError.NOT_VALIDATED,
                f"version {version} has not passed preview validation",
            )
        validate_for_promotion(deployment)
        outcome.promoted = self.ctx.promotion.ensure_production(
            project, deployment, self.validated_by, reason="VersionPromoted"
        )
        return outcome


class GitOpsLatestPolicy(PolicyEngine):
    """A single declared version, asserted only when the declaration changes.

    Once the aggregator has recorded the version as ``last_synced_version`` the
    engine stands down, so a manual rollback in the backend is not undone on
    every tick.

    A version created straight into production never flips environment, so its
    promotion is recorded here when the release set reports it as new.
    """

    policy = VersionPolicy.GITOPS_LATEST
    failure_reason = "GitOpsLatestReconcileFailed"
    validated_by = "gitopsLatest"

    def resolve(self, project: Project, deployments: List[Deployment]) -> Resolution:
        config: GitOpsLatestConfig = project.spec.version_management
        if config.version == project.status.last_synced_version:
            return Resolution(current_version=config.version)
        resolved = resolve_versions(project)
        return Resolution(
            versions=resolved.versions,
            current_version=config.version,
            production_version=resolved.production_target,
            environment=resolved.environment,
        )

    def reconcile(self, project: Project) -> PolicyOutcome:
        resolution = self.resolve(project, [])
        outcome = PolicyOutcome(resolution=resolution)
        if not resolution.versions:
            log_event("policy.gitops_latest.synced", project=project.metadata.name, version=resolution.current_version)
            return outcome
        outcome.release_set = self._materialize(project, resolution)
        if not resolution.production_version:
            return outcome
        deployment = self.ctx.index.find_by_version(project, resolution.production_version)
        if deployment is None:
            raise NotFoundError(f"version {resolution.production_version} not found after creation")
        outcome.promoted = self.ctx.promotion.ensure_production(project, deployment, self.validated_by)
        landed = resolution.production_version in outcome.release_set.created + outcome.release_set.recreated
        if landed and not outcome.promoted and is_production(deployment):
            self.ctx.promotion.record_promotion(project, deployment, self.validated_by)
            outcome.promoted = True
        return outcome


class ExternalPolicy(PolicyEngine):
    """Version names are written into the Project by an outside system; this engine follows them."""

    policy = VersionPolicy.EXTERNAL
    failure_reason = "ExternalReconcileFailed"
    validated_by = "external"

    def resolve(self, project: Project, deployments: List[Deployment]) -> Resolution:
        config: ExternalConfig = project.spec.version_management
        resolved = resolve_versions(project)
        return Resolution(
            versions=resolved.versions,
            current_version=resolved.preview_version,
            production_version=resolved.production_version,
            requeue_after=config.sync_interval_seconds or self.ctx.external_sync_seconds,
        )

    def reconcile(self, project: Project) -> PolicyOutcome:
        resolution = self.resolve(project, [])
        outcome = PolicyOutcome(resolution=resolution, requeue_after=resolution.requeue_after)
        outcome.release_set = self._materialize(project, resolution)
        version = resolution.production_version
        if not version:
            return outcome
        deployment = self.ctx.index.find_by_version(project, version)
        if deployment is None:
            raise NotFoundError(f"production version {version} not found")
        validate_for_promotion(deployment)
        outcome.promoted = self.ctx.promotion.ensure_production(
            project, deployment, self.validated_by, reason="VersionPromoted"
        )
        return outcome
