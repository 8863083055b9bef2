from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from release_controller.models import Deployment, DeploymentState, Environment, Project
from release_controller.ownership import (
    belongs_to_project,
    deployment_version_name,
    is_managed_by,
    managed_selector,
)


class VersionInfo(BaseModel):
    version: str
    deployment_name: str
    deployment_id: Optional[str] = None
    environment: Environment
    state: Optional[DeploymentState] = None
    url: Optional[str] = None
    is_production: bool = False


def index_deployments(deployments: Iterable[Deployment]) -> Dict[str, str]:
    """Version name -> external deployment id, for deployments the backend has accepted."""
    index: Dict[str, str] = {}
    for deployment in deployments:
        version = deployment_version_name(deployment)
        if version and deployment.status.deployment_id:
            index[version] = deployment.status.deployment_id
    return index


def find_version(deployments: Iterable[Deployment], version: str) -> Optional[Deployment]:
    for deployment in deployments:
        if deployment_version_name(deployment) == version:
            return deployment
    return None


def find_deployment_id(deployments: Iterable[Deployment], deployment_id: str) -> Optional[Deployment]:
    if not deployment_id:
        return None
    for deployment in deployments:
        if deployment.status.deployment_id == deployment_id:
            return deployment
    return None


def version_info(deployment: Deployment) -> VersionInfo:
    return VersionInfo(
        version=deployment_version_name(deployment) or "",
        deployment_name=deployment.metadata.name,
        deployment_id=deployment.status.deployment_id,
        environment=deployment.spec.environment,
        state=deployment.status.state,
        url=deployment.status.url,
        is_production=deployment.spec.environment == Environment.PRODUCTION,
    )


class ReleaseIndex:
    """Version/id lookups over a Project's Deployments.

    Nothing is cached: every call lists the store again, so lookups always
    observe writes made earlier in the same pass.
    """

    def __init__(self, store) -> None:
        self.store = store

    def project_deployments(self, project: Project) -> List[Deployment]:
        deployments = self.store.list(Deployment, project.metadata.namespace)
        return [d for d in deployments if belongs_to_project(d, project)]

    def managed_deployments(self, project: Project) -> List[Deployment]:
        deployments = self.store.list(Deployment, project.metadata.namespace, managed_selector(project))
        # Store label filters are equality-only; re-check in case a backend ignores them.
        return [d for d in deployments if is_managed_by(d, project)]

    def build_index(self, project: Project) -> Dict[str, str]:
        return index_deployments(self.project_deployments(project))

    def find_by_version(self, project: Project, version: str) -> Optional[Deployment]:
        return find_version(self.project_deployments(project), version)

    def find_by_id(self, project: Project, deployment_id: str) -> Optional[Deployment]:
        return find_deployment_id(self.project_deployments(project), deployment_id)

    def list_versions(self, project: Project) -> List[str]:
        versions = {deployment_version_name(d) for d in self.project_deployments(project)}
        return sorted(v for v in versions if v)

    def get_deployment_id(self, project: Project, version: str) -> Optional[str]:
        return self.build_index(project).get(version)

    def list_versions_with_info(self, project: Project) -> List[VersionInfo]:
        infos = [version_info(d) for d in self.project_deployments(project) if deployment_version_name(d)]
        return sorted(infos, key=lambda info: info.version)
