from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def as_utc(value: Optional[datetime]) -> datetime:
    """Comparable timestamp; unset sorts before everything, naive values are taken as UTC."""
    if value is None:
        return EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Environment(str, Enum):
    PREVIEW = "preview"
    PRODUCTION = "production"


class DeploymentState(str, Enum):
    PENDING = "Pending"
    QUEUED = "Queued"
    BUILDING = "Building"
    DEPLOYING = "Deploying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class VersionPolicy(str, Enum):
    DECLARATIVE = "declarative"
    GITOPS = "gitops"
    GITOPS_LATEST = "gitopsLatest"
    LATEST_PREVIEW = "latestPreview"
    AUTO_PROMOTE = "autoPromote"
    EXTERNAL = "external"


class ValidationResult(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


# Object envelope


class OwnerReference(BaseModel):
    kind: str
    name: str
    uid: str
    controller: bool = True


class ObjectMeta(BaseModel):
    name: str
    namespace: str = "default"
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None


class Condition(BaseModel):
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None
    observed_generation: int = 0


def set_condition(conditions: List[Condition], condition: Condition) -> List[Condition]:
    """Upsert a condition by type, keeping the transition time unless the status flips."""
    updated: List[Condition] = []
    found = False
    for existing in conditions:
        if existing.type != condition.type:
            updated.append(existing)
            continue
        found = True
        transition = existing.last_transition_time
        if existing.status != condition.status or transition is None:
            transition = condition.last_transition_time or utc_now()
        updated.append(condition.model_copy(update={"last_transition_time": transition}))
    if not found:
        transition = condition.last_transition_time or utc_now()
        updated.append(condition.model_copy(update={"last_transition_time": transition}))
    return updated


def find_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


class LabelSelectorRequirement(BaseModel):
    key: str
    operator: Literal["In", "NotIn", "Exists", "DoesNotExist"]
    values: List[str] = Field(default_factory=list)


class LabelSelector(BaseModel):
    match_labels: Dict[str, str] = Field(default_factory=dict)
    match_expressions: List[LabelSelectorRequirement] = Field(default_factory=list)

    def matches(self, labels: Dict[str, str]) -> bool:
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        for requirement in self.match_expressions:
            present = requirement.key in labels
            if requirement.operator == "Exists" and not present:
                return False
            if requirement.operator == "DoesNotExist" and present:
                return False
            if requirement.operator == "In" and (not present or labels[requirement.key] not in requirement.values):
                return False
            if requirement.operator == "NotIn" and present and labels[requirement.key] in requirement.values:
                return False
        return True


# Build sources


class S3Source(BaseModel):
    bucket: str
    key: str
    region: Optional[str] = None
    endpoint: Optional[str] = None
    credentials_secret_ref: Optional[str] = None
    use_path_style: bool = False


class HTTPSource(BaseModel):
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    headers_secret_ref: Optional[str] = None
    timeout_seconds: Optional[int] = None
    insecure_skip_verify: bool = False


class OCISource(BaseModel):
    image: str
    credentials_secret_ref: Optional[str] = None
    insecure_registry: bool = False


class SourceLocation(BaseModel):
    s3: Optional[S3Source] = None
    http: Optional[HTTPSource] = None
    oci: Optional[OCISource] = None


class Checksum(BaseModel):
    algorithm: Literal["sha256", "sha512", "md5"] = "sha256"
    value: str


class Archive(BaseModel):
    type: Literal["tar.gz", "tar", "zip", "none"] = "tar.gz"
    strip_components: int = 0
    sub_path: Optional[str] = None


class DeploymentMetadata(BaseModel):
    branch: Optional[str] = None
    commit_hash: Optional[str] = None
    commit_message: Optional[str] = None
    commit_dirty: Optional[bool] = None


class BuildSource(BaseModel):
    location: Optional[SourceLocation] = None
    checksum: Optional[Checksum] = None
    archive: Optional[Archive] = None
    deployment_metadata: Optional[DeploymentMetadata] = None


class S3SourceTemplate(BaseModel):
    bucket: str
    key_template: str
    region: Optional[str] = None
    endpoint: Optional[str] = None
    credentials_secret_ref: Optional[str] = None
    use_path_style: bool = False
    archive_type: Literal["tar.gz", "tar", "zip", "none"] = "tar.gz"


class HTTPSourceTemplate(BaseModel):
    url_template: str
    headers_secret_ref: Optional[str] = None
    archive_type: Literal["tar.gz", "tar", "zip", "none"] = "tar.gz"


class OCISourceTemplate(BaseModel):
    repository: str
    tag_template: str
    credentials_secret_ref: Optional[str] = None


class SourceTemplate(BaseModel):
    type: Literal["s3", "http", "oci"]
    s3: Optional[S3SourceTemplate] = None
    http: Optional[HTTPSourceTemplate] = None
    oci: Optional[OCISourceTemplate] = None


class Version(BaseModel):
    name: str = Field(..., min_length=1)
    source: Optional[BuildSource] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


# Version management variants, selected by `policy`


class DeclarativeConfig(BaseModel):
    policy: Literal["declarative"] = "declarative"
    versions: List[Version] = Field(default_factory=list)
    version_names: List[str] = Field(default_factory=list)
    source_template: Optional[SourceTemplate] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    production_target: Optional[str] = None


class GitOpsConfig(BaseModel):
    policy: Literal["gitops"] = "gitops"
    preview_version: Optional[str] = None
    production_version: Optional[str] = None
    source_template: Optional[SourceTemplate] = None
    preview_metadata: Dict[str, str] = Field(default_factory=dict)
    production_metadata: Dict[str, str] = Field(default_factory=dict)
    require_preview_validation: bool = True
    validation_labels: Dict[str, str] = Field(default_factory=dict)


class GitOpsLatestConfig(BaseModel):
    policy: Literal["gitopsLatest"] = "gitopsLatest"
    version: str = Field(..., min_length=1)
    source: Optional[BuildSource] = None
    source_template: Optional[SourceTemplate] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    environment: Environment = Environment.PRODUCTION


class LatestPreviewConfig(BaseModel):
    policy: Literal["latestPreview"] = "latestPreview"
    label_selector: Optional[LabelSelector] = None
    auto_promote: bool = False


class AutoPromoteConfig(BaseModel):
    policy: Literal["autoPromote"] = "autoPromote"
    label_selector: Optional[LabelSelector] = None
    promote_after_seconds: Optional[float] = Field(None, ge=0)
    require_health_check: bool = False
    health_check_url: Optional[str] = None
    health_check_timeout_seconds: Optional[float] = Field(None, gt=0)


class ExternalConfig(BaseModel):
    policy: Literal["external"] = "external"
    current_version: Optional[str] = None
    production_version: Optional[str] = None
    source_template: Optional[SourceTemplate] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    sync_interval_seconds: Optional[float] = Field(None, gt=0)


VersionManagement = Annotated[
    Union[
        DeclarativeConfig,
        GitOpsConfig,
        GitOpsLatestConfig,
        LatestPreviewConfig,
        AutoPromoteConfig,
        ExternalConfig,
    ],
    Field(discriminator="policy"),
]


# Project


class ValidationRecord(BaseModel):
    version_name: str
    deployment_id: str
    validated_at: datetime
    validated_by: str
    validation_result: ValidationResult = ValidationResult.PASSED


class ManagedVersionStatus(BaseModel):
    name: str
    deployment_name: str
    state: Optional[DeploymentState] = None
    is_production: bool = False
    deployment_id: Optional[str] = None
    last_transition_time: Optional[datetime] = None


class ProductionDeploymentInfo(BaseModel):
    version: str
    deployment_id: Optional[str] = None
    deployment_name: str
    url: Optional[str] = None
    hash_url: Optional[str] = None
    deployed_at: Optional[datetime] = None


class PreviewDeploymentInfo(BaseModel):
    version: str
    deployment_id: Optional[str] = None
    deployment_name: str
    url: Optional[str] = None
    finished_at: Optional[datetime] = None


class ProjectSpec(BaseModel):
    name: Optional[str] = None
    production_branch: str = "main"
    versions: List[Version] = Field(default_factory=list)
    production_target: Optional[str] = None
    revision_history_limit: Optional[int] = Field(None, ge=0)
    version_management: Optional[VersionManagement] = None


class ProjectStatus(BaseModel):
    external_id: Optional[str] = None
    managed_deployments: int = 0
    managed_versions: List[ManagedVersionStatus] = Field(default_factory=list)
    current_production: Optional[ProductionDeploymentInfo] = None
    preview_deployment: Optional[PreviewDeploymentInfo] = None
    last_synced_version: Optional[str] = None
    active_policy: Optional[VersionPolicy] = None
    validation_history: List[ValidationRecord] = Field(default_factory=list)
    version_mapping: Dict[str, str] = Field(default_factory=dict)
    conditions: List[Condition] = Field(default_factory=list)
    observed_generation: int = 0


class Project(BaseModel):
    KIND: ClassVar[str] = "Project"

    metadata: ObjectMeta
    spec: ProjectSpec = Field(default_factory=ProjectSpec)
    status: ProjectStatus = Field(default_factory=ProjectStatus)

    @property
    def external_name(self) -> str:
        return self.spec.name or self.metadata.name

    @property
    def policy(self) -> VersionPolicy:
        if self.spec.version_management is None:
            return VersionPolicy.DECLARATIVE
        return VersionPolicy(self.spec.version_management.policy)


# Deployment


class ProjectRef(BaseModel):
    name: Optional[str] = None
    external_id: Optional[str] = None
    external_name: Optional[str] = None


class DeploymentSpec(BaseModel):
    project_ref: ProjectRef = Field(default_factory=ProjectRef)
    version_name: Optional[str] = None
    environment: Environment = Environment.PREVIEW
    source: Optional[BuildSource] = None


class DeploymentStatus(BaseModel):
    deployment_id: Optional[str] = None
    project_name: Optional[str] = None
    version_name: Optional[str] = None
    environment: Optional[Environment] = None
    state: Optional[DeploymentState] = None
    url: Optional[str] = None
    hash_url: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    conditions: List[Condition] = Field(default_factory=list)


class Deployment(BaseModel):
    KIND: ClassVar[str] = "Deployment"

    metadata: ObjectMeta
    spec: DeploymentSpec = Field(default_factory=DeploymentSpec)
    status: DeploymentStatus = Field(default_factory=DeploymentStatus)


# API payloads


class ProjectApply(BaseModel):
    labels: Dict[str, str] = Field(default_factory=dict)
    spec: ProjectSpec


class DeploymentStatusUpdate(BaseModel):
    deployment_id: Optional[str] = None
    state: Optional[DeploymentState] = None
    url: Optional[str] = None
    hash_url: Optional[str] = None
    environment: Optional[Environment] = None
    finished_at: Optional[datetime] = None


class ReconcileResponse(BaseModel):
    requeueAfter: Optional[float] = None
    ready: bool
    error: Optional[str] = None
