import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from release_controller.errors import NotFoundError
from release_controller.events import EventRecorder
from release_controller.models import (
    BuildSource,
    DeclarativeConfig,
    Deployment,
    DeploymentMetadata,
    DeploymentSpec,
    Environment,
    ExternalConfig,
    GitOpsConfig,
    GitOpsLatestConfig,
    ObjectMeta,
    Project,
    ProjectRef,
    Version,
)
from release_controller.observability import log_event
from release_controller.ownership import (
    MANAGED_ANNOTATION,
    deployment_object_name,
    deployment_version_name,
    managed_labels,
    owner_reference,
)
from release_controller.release_index import ReleaseIndex, find_version
from release_controller.templates import resolve_version


logger = logging.getLogger("relctl.release_set")

LATEST_TARGET = "latest"


@dataclass
class ResolvedVersions:
    versions: List[Version] = field(default_factory=list)
    production_target: Optional[str] = None
    preview_version: Optional[str] = None
    production_version: Optional[str] = None
    environment: Environment = Environment.PREVIEW


def _with_branch(metadata: Dict[str, str], production_branch: str) -> Dict[str, str]:
    merged = dict(metadata or {})
    if not merged.get("branch") and production_branch:
        merged["branch"] = production_branch
    return merged


def _unique(versions: List[Version]) -> List[Version]:
    seen = set()
    unique = []
    for version in versions:
        if version.name in seen:
            logger.warning("release_set.duplicate_version version=%s", version.name)
            continue
        seen.add(version.name)
        unique.append(version)
    return unique


def resolve_versions(project: Project) -> ResolvedVersions:
    """Turn the Project's version-management block into concrete Version entries.

    Templates are resolved here, once per pass. Policies that select from
    existing Deployments (latestPreview, autoPromote) declare no versions.
    """
    spec = project.spec
    branch = spec.production_branch
    config = spec.version_management

    if config is None:
        versions = [
            version.model_copy(update={"metadata": _with_branch(version.metadata, branch)})
            for version in spec.versions
        ]
        return ResolvedVersions(versions=_unique(versions), production_target=spec.production_target)

    if isinstance(config, DeclarativeConfig):
        versions = [
            version.model_copy(update={"metadata": _with_branch(version.metadata, branch)})
            for version in config.versions
        ]
        shared = _with_branch(config.metadata, branch)
        for name in config.version_names:
            versions.append(resolve_version(name, config.source_template, shared))
        return ResolvedVersions(versions=_unique(versions), production_target=config.production_target)

    if isinstance(config, GitOpsConfig):
        resolved = ResolvedVersions(
            preview_version=config.preview_version,
            production_version=config.production_version,
        )
        if config.preview_version:
            resolved.versions.append(
                resolve_version(
                    config.preview_version,
                    config.source_template,
                    _with_branch(config.preview_metadata, branch),
                )
            )
        return resolved

    if isinstance(config, GitOpsLatestConfig):
        metadata = _with_branch(config.metadata, branch)
        if config.source is not None:
            version = Version(name=config.version, source=config.source, metadata=metadata)
        else:
            version = resolve_version(config.version, config.source_template, metadata)
        return ResolvedVersions(
            versions=[version],
            production_target=config.version if config.environment == Environment.PRODUCTION else None,
            environment=config.environment,
        )

    if isinstance(config, ExternalConfig):
        resolved = ResolvedVersions(
            preview_version=config.current_version,
            production_version=config.production_version,
        )
        if config.current_version:
            resolved.versions.append(
                resolve_version(config.current_version, config.source_template, _with_branch(config.metadata, branch))
            )
        return resolved

    return ResolvedVersions()


def build_source(version: Version) -> Optional[BuildSource]:
    """The source recorded on a Deployment: the declared source plus trigger metadata.

    Metadata keys fill ``deployment_metadata``; values set on the source itself win.
    """
    if version.source is None:
        return None
    source = version.source.model_copy(deep=True)
    meta = version.metadata
    from_metadata = DeploymentMetadata(
        branch=meta.get("branch") or None,
        commit_hash=meta.get("commitHash") or None,
        commit_message=meta.get("commitMessage") or None,
        commit_dirty=(meta["commitDirty"] == "true") if "commitDirty" in meta else None,
    )
    declared = source.deployment_metadata
    if declared is not None:
        overrides = declared.model_dump(exclude_none=True)
        from_metadata = from_metadata.model_copy(update=overrides)
    if from_metadata.model_dump(exclude_none=True):
        source.deployment_metadata = from_metadata
    return source


@dataclass
class ReleaseSetResult:
    created: List[str] = field(default_factory=list)
    recreated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def mutated(self) -> bool:
        return bool(self.created or self.recreated)


class ReleaseSetReconciler:
    """Converges declared versions to exactly one Deployment each.

    Deployments are immutable once created: a changed source is applied by
    deleting the old object and creating a replacement under the same name.
    Versions missing from the desired list are left alone; retention is the
    pruner's job.
    """

    def __init__(self, store, recorder: EventRecorder, index: ReleaseIndex) -> None:
        self.store = store
        self.recorder = recorder
        self.index = index

    def reconcile(
        self,
        project: Project,
        versions: List[Version],
        environment: Environment = Environment.PREVIEW,
    ) -> ReleaseSetResult:
        result = ReleaseSetResult()
        if not versions:
            return result
        managed: Dict[str, Deployment] = {}
        for deployment in self.index.managed_deployments(project):
            name = deployment_version_name(deployment)
            if name:
                managed[name] = deployment
        belonging: Optional[List[Deployment]] = None

        for version in versions:
            desired = build_source(version)
            existing = managed.get(version.name)
            if existing is None:
                if belonging is None:
                    belonging = self.index.project_deployments(project)
                foreign = find_version(belonging, version.name)
                if foreign is not None:
                    # Created by other tooling; tracked but never rewritten here.
                    logger.info(
                        "release_set.unmanaged_version project=%s version=%s deployment=%s",
                        project.metadata.name,
                        version.name,
                        foreign.metadata.name,
                    )
                    result.skipped.append(version.name)
                    continue
                self.create_deployment(project, version, desired, environment)
                result.created.append(version.name)
            elif self.needs_update(desired, existing):
                self.recreate_deployment(project, version, desired, existing, environment)
                result.recreated.append(version.name)
            else:
                result.unchanged.append(version.name)
        return result

    def needs_update(self, desired: Optional[BuildSource], existing: Deployment) -> bool:
        return desired != existing.spec.source

    def create_deployment(
        self,
        project: Project,
        version: Version,
        source: Optional[BuildSource],
        environment: Environment,
    ) -> Deployment:
        deployment = Deployment(
            metadata=ObjectMeta(
                name=deployment_object_name(project, version.name),
                namespace=project.metadata.namespace,
                labels=managed_labels(project, version.name),
                annotations={MANAGED_ANNOTATION: "true"},
                owner_references=[owner_reference(project)],
            ),
            spec=DeploymentSpec(
                project_ref=ProjectRef(name=project.metadata.name),
                version_name=version.name,
                environment=environment,
                source=source,
            ),
        )
        created = self.store.create(deployment)
        log_event(
            "release_set.created",
            project=project.metadata.name,
            version=version.name,
            deployment=created.metadata.name,
            environment=environment,
        )
        self.recorder.normal(
            project,
            "Created",
            f"Created deployment {created.metadata.name} for version {version.name}",
        )
        return created

    def recreate_deployment(
        self,
        project: Project,
        version: Version,
        source: Optional[BuildSource],
        existing: Deployment,
        environment: Environment,
    ) -> Deployment:
        try:
            self.store.delete(existing)
        except NotFoundError:
            logger.info("release_set.recreate_already_deleted deployment=%s", existing.metadata.name)
        log_event(
            "release_set.deleted_for_recreate",
            project=project.metadata.name,
            version=version.name,
            deployment=existing.metadata.name,
        )
        created = self.create_deployment(project, version, source, environment)
        self.recorder.normal(
            project,
            "Recreated",
            f"Recreated deployment {created.metadata.name}: source for version {version.name} changed",
        )
        return created
