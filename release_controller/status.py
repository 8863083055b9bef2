from dataclasses import dataclass, field
from typing import Dict, List, Optional

from release_controller.models import (
    Condition,
    ConditionStatus,
    Deployment,
    GitOpsLatestConfig,
    ManagedVersionStatus,
    ProductionDeploymentInfo,
    Project,
    ProjectStatus,
    VersionPolicy,
    set_condition,
)
from release_controller.observability import log_event
from release_controller.ownership import deployment_version_name, is_managed_by
from release_controller.preview_policies import select_latest
from release_controller.promotion import is_production
from release_controller.redaction import sanitize_error_message
from release_controller.release_index import ReleaseIndex, index_deployments
from release_controller.store import update_with_conflict_retry


READY = "Ready"


@dataclass
class StatusSummary:
    managed_deployments: int = 0
    managed_versions: List[ManagedVersionStatus] = field(default_factory=list)
    current_production: Optional[ProductionDeploymentInfo] = None
    version_mapping: Dict[str, str] = field(default_factory=dict)


def summarize(project: Project, deployments: List[Deployment]) -> StatusSummary:
    managed = [d for d in deployments if is_managed_by(d, project)]
    versions = []
    for deployment in managed:
        conditions = deployment.status.conditions
        versions.append(
            ManagedVersionStatus(
                name=deployment_version_name(deployment) or "",
                deployment_name=deployment.metadata.name,
                state=deployment.status.state,
                is_production=is_production(deployment),
                deployment_id=deployment.status.deployment_id,
                last_transition_time=conditions[-1].last_transition_time if conditions else None,
            )
        )
    versions.sort(key=lambda item: item.name)

    current = None
    production = select_latest([d for d in deployments if is_production(d)])
    if production is not None:
        current = ProductionDeploymentInfo(
            version=deployment_version_name(production) or "",
            deployment_id=production.status.deployment_id,
            deployment_name=production.metadata.name,
            url=production.status.url,
            hash_url=production.status.hash_url,
            deployed_at=production.status.finished_at,
        )
    return StatusSummary(
        managed_deployments=len(managed),
        managed_versions=versions,
        current_production=current,
        version_mapping=index_deployments(deployments),
    )


class StatusAggregator:
    """Recompute the Project's externally visible status from its live Deployments."""

    def __init__(self, store, index: ReleaseIndex, max_attempts: int = 5, retry_delay: float = 0.1) -> None:
        self.store = store
        self.index = index
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def next_status(
        self,
        project: Project,
        summary: StatusSummary,
        policy: VersionPolicy,
        error: Optional[Exception] = None,
    ) -> ProjectStatus:
        status = project.status.model_copy(deep=True)
        status.managed_deployments = summary.managed_deployments
        status.managed_versions = summary.managed_versions
        status.current_production = summary.current_production
        status.version_mapping = summary.version_mapping
        status.active_policy = policy

        config = project.spec.version_management
        if (
            isinstance(config, GitOpsLatestConfig)
            and summary.current_production is not None
            and summary.current_production.version == config.version
        ):
            status.last_synced_version = config.version

        generation = project.metadata.generation
        if error is None:
            ready = Condition(
                type=READY,
                status=ConditionStatus.TRUE,
                reason="Reconciled",
                message="Releases are in sync",
                observed_generation=generation,
            )
        else:
            ready = Condition(
                type=READY,
                status=ConditionStatus.FALSE,
                reason="ReconcileError",
                message=sanitize_error_message(str(error)),
                observed_generation=generation,
            )
        status.conditions = set_condition(status.conditions, ready)
        status.observed_generation = generation
        return status

    def aggregate(self, project: Project, policy: VersionPolicy, error: Optional[Exception] = None) -> Project:
        """Write the recomputed status once; nothing is written when it is unchanged."""
        fresh = self.store.get(Project, project.metadata.namespace, project.metadata.name)
        summary = summarize(fresh, self.index.project_deployments(fresh))
        if self.next_status(fresh, summary, policy, error) == fresh.status:
            return fresh

        def mutate(current: Project) -> None:
            current.status = self.next_status(current, summary, policy, error)

        updated = update_with_conflict_retry(
            self.store, fresh, mutate, max_attempts=self.max_attempts, retry_delay=self.retry_delay
        )
        log_event(
            "status.updated",
            project=updated.metadata.name,
            managed=summary.managed_deployments,
            production=summary.current_production.version if summary.current_production else None,
            ready=error is None,
        )
        return updated
