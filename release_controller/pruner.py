import logging
from dataclasses import dataclass, field
from typing import List, Optional

from release_controller.errors import NotFoundError, PartialFailureError, ReconcileError
from release_controller.models import Deployment, Project, as_utc
from release_controller.observability import log_event
from release_controller.ownership import deployment_version_name
from release_controller.promotion import is_production
from release_controller.release_index import ReleaseIndex


logger = logging.getLogger("relctl.pruner")


@dataclass
class PruneResult:
    deleted: List[str] = field(default_factory=list)
    protected: List[str] = field(default_factory=list)


def prune_order(deployments: List[Deployment]) -> List[Deployment]:
    """Production first, then newest first by creation time."""
    return sorted(
        deployments,
        key=lambda d: (is_production(d), as_utc(d.metadata.creation_timestamp)),
        reverse=True,
    )


class Pruner:
    """Retention-limited garbage collection of managed Deployments.

    Best effort: a failed delete is logged and the remaining candidates are
    still processed. A production Deployment is never deleted, whatever its
    rank.
    """

    def __init__(self, store, index: ReleaseIndex, default_limit: int = 10) -> None:
        self.store = store
        self.index = index
        self.default_limit = default_limit

    def limit_for(self, project: Project) -> int:
        if project.spec.revision_history_limit is not None:
            return project.spec.revision_history_limit
        return self.default_limit

    def prune(self, project: Project) -> PruneResult:
        result = PruneResult()
        limit = self.limit_for(project)
        if limit == 0:
            return result
        deployments = self.index.managed_deployments(project)
        if len(deployments) <= limit:
            logger.debug(
                "pruner.under_limit project=%s count=%s limit=%s", project.metadata.name, len(deployments), limit
            )
            return result

        errors: List[Exception] = []
        for candidate in prune_order(deployments)[limit:]:
            try:
                current = self._refresh(candidate)
            except ReconcileError as exc:
                errors.append(exc)
                continue
            if current is None:
                continue
            if is_production(current):
                logger.info("pruner.skip_production deployment=%s", current.metadata.name)
                result.protected.append(current.metadata.name)
                continue
            try:
                self.store.delete(current)
            except NotFoundError:
                continue
            except ReconcileError as exc:
                logger.warning("pruner.delete_failed deployment=%s error=%s", current.metadata.name, exc)
                errors.append(exc)
                continue
            log_event(
                "pruner.deleted",
                project=project.metadata.name,
                deployment=current.metadata.name,
                version=deployment_version_name(current),
            )
            result.deleted.append(current.metadata.name)

        if errors:
            raise PartialFailureError(errors, context=f"prune {project.metadata.name}")
        return result

    def _refresh(self, deployment: Deployment) -> Optional[Deployment]:
        # The sort ran on a listing; re-read so an environment flip since then is seen.
        try:
            return self.store.get(Deployment, deployment.metadata.namespace, deployment.metadata.name)
        except NotFoundError:
            return None
