"""Which Deployments belong to which Project.

Two notions coexist. A Deployment is *managed* by a Project when it carries the
full label triad written at creation time (managed-by, owner name, owner uid);
the uid guards against stale labels surviving a Project being recreated under
the same name. A Deployment *belongs* to a Project under the looser union of
matching strategies, which tolerates objects created by other tooling or only
partially migrated.
"""
from typing import Dict, Optional

from release_controller.models import Deployment, OwnerReference, Project


MANAGED_BY_LABEL = "release-controller.io/managed-by"
MANAGED_BY_NAME_LABEL = "release-controller.io/managed-by-name"
MANAGED_BY_UID_LABEL = "release-controller.io/managed-by-uid"
VERSION_LABEL = "release-controller.io/version"
MANAGED_ANNOTATION = "release-controller.io/managed"
MANAGED_BY_VALUE = "project"


def managed_selector(project: Project) -> Dict[str, str]:
    return {
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        MANAGED_BY_NAME_LABEL: project.metadata.name,
        MANAGED_BY_UID_LABEL: project.metadata.uid,
    }


def managed_labels(project: Project, version_name: str) -> Dict[str, str]:
    labels = managed_selector(project)
    labels[VERSION_LABEL] = version_name
    return labels


def deployment_object_name(project: Project, version_name: str) -> str:
    return f"{project.metadata.name}-{version_name}"


def owner_reference(project: Project) -> OwnerReference:
    return OwnerReference(kind=project.KIND, name=project.metadata.name, uid=project.metadata.uid)


def is_managed_by(deployment: Deployment, project: Project) -> bool:
    labels = deployment.metadata.labels
    return all(labels.get(key) == value for key, value in managed_selector(project).items())


def is_owned_by(deployment: Deployment, project: Project) -> bool:
    if is_managed_by(deployment, project):
        return True
    return any(ref.uid == project.metadata.uid for ref in deployment.metadata.owner_references)


def belongs_to_project(deployment: Deployment, project: Project) -> bool:
    ref = deployment.spec.project_ref
    external_name = project.external_name
    if ref.name and ref.name == project.metadata.name:
        return True
    if ref.external_name and ref.external_name == external_name:
        return True
    if ref.external_id and ref.external_id in {external_name, project.status.external_id}:
        return True
    if deployment.status.project_name and deployment.status.project_name == external_name:
        return True
    return deployment.metadata.labels.get(MANAGED_BY_NAME_LABEL) == project.metadata.name


def deployment_version_name(deployment: Deployment) -> Optional[str]:
    """Spec first, then status, then label: each survives a different partial write."""
    if deployment.spec.version_name:
        return deployment.spec.version_name
    if deployment.status.version_name:
        return deployment.status.version_name
    return deployment.metadata.labels.get(VERSION_LABEL) or None
