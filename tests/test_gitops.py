from release_controller.errors import NotFoundError, ValidationFailedError
from release_controller.models import (
    DeploymentState,
    Environment,
    GitOpsConfig,
    Project,
    ProjectSpec,
    S3SourceTemplate,
    SourceTemplate,
    ValidationRecord,
)
from release_controller.policies import is_version_validated

from fakes import (
    BASE_TIME,
    FakeRecorder,
    build_controller,
    build_store,
    create_deployment,
    create_project,
    deployments_by_version,
    production_versions,
    set_status,
)


TEMPLATE = SourceTemplate(type="s3", s3=S3SourceTemplate(bucket="releases", key_template="site/{{.Version}}.tar.gz"))


def _gitops_project(store, **config):
    return create_project(store, spec=ProjectSpec(version_management=GitOpsConfig(**config)))


def test_preview_version_is_created_from_template(tmp_path):
    store = build_store(tmp_path)
    _gitops_project(store, preview_version="v2", source_template=TEMPLATE, preview_metadata={"commitHash": "abc"})
    controller = build_controller(store)

    result = controller.reconcile("default", "site")

    assert result.ready
    preview = deployments_by_version(store)["v2"]
    assert preview.spec.environment == Environment.PREVIEW
    assert preview.spec.source.location.s3.key == "site/v2.tar.gz"
    assert preview.spec.source.deployment_metadata.commit_hash == "abc"
    assert preview.spec.source.deployment_metadata.branch == "main"


def test_unlabelled_production_version_is_blocked(tmp_path):
    store = build_store(tmp_path)
    project = _gitops_project(store, production_version="v1", validation_labels={"qa": "passed"})
    create_deployment(store, project, "v1", deployment_id="d1")
    recorder = FakeRecorder()
    controller = build_controller(store, recorder)

    result = controller.reconcile("default", "site")

    assert isinstance(result.error, ValidationFailedError)
    assert result.error.reason == ValidationFailedError.NOT_VALIDATED
    assert production_versions(store) == []
    assert "GitOpsReconcileFailed" in recorder.reasons()


def test_validated_production_version_is_promoted(tmp_path):
    store = build_store(tmp_path)
    project = _gitops_project(store, production_version="v2", validation_labels={"qa": "passed"})
    create_deployment(store, project, "v1", environment=Environment.PRODUCTION, deployment_id="d1")
    create_deployment(store, project, "v2", deployment_id="d2", labels={"qa": "passed"})
    set_status(store, "default", "site-v2", environment=Environment.PREVIEW)
    recorder = FakeRecorder()
    controller = build_controller(store, recorder)

    result = controller.reconcile("default", "site")

    assert result.ready
    assert production_versions(store) == ["v2"]
    assert recorder.reasons()[:2] == ["VersionPromoted", "ProductionDemoted"]
    history = store.get(Project, "default", "site").status.validation_history
    assert history[0].version_name == "v2"
    assert history[0].validated_by == "gitops"


def test_missing_production_version_is_not_found(tmp_path):
    store = build_store(tmp_path)
    _gitops_project(store, production_version="v7")
    controller = build_controller(store)

    result = controller.reconcile("default", "site")

    assert isinstance(result.error, NotFoundError)
    assert result.requeue_after == controller.settings.short_requeue_seconds


def test_failed_deployment_without_gate_is_not_succeeded(tmp_path):
    store = build_store(tmp_path)
    project = _gitops_project(store, production_version="v1", require_preview_validation=False)
    create_deployment(store, project, "v1", state=DeploymentState.FAILED, deployment_id="d1")
    controller = build_controller(store)

    result = controller.reconcile("default", "site")

    assert result.error.reason == ValidationFailedError.NOT_SUCCEEDED
    assert production_versions(store) == []


def test_failed_deployment_with_gate_is_not_validated(tmp_path):
    store = build_store(tmp_path)
    project = _gitops_project(store, production_version="v1")
    create_deployment(store, project, "v1", state=DeploymentState.FAILED, deployment_id="d1")
    controller = build_controller(store)

    result = controller.reconcile("default", "site")

    assert result.error.reason == ValidationFailedError.NOT_VALIDATED


def test_validation_history_counts_outside_preview(tmp_path):
    store = build_store(tmp_path)
    project = _gitops_project(store, production_version="v1")
    create_deployment(store, project, "v1", environment=Environment.PRODUCTION, deployment_id="d1")
    deployment = set_status(store, "default", "site-v1", environment=Environment.PRODUCTION)

    assert not is_version_validated(project, deployment, {})

    project.status.validation_history = [
        ValidationRecord(version_name="v1", deployment_id="d1", validated_at=BASE_TIME, validated_by="gitops")
    ]
    assert is_version_validated(project, deployment, {})


def test_backend_reported_environment_wins_over_spec(tmp_path):
    store = build_store(tmp_path)
    project = _gitops_project(store, production_version="v1")
    create_deployment(store, project, "v1", deployment_id="d1")

    deployment = set_status(store, "default", "site-v1", environment=Environment.PRODUCTION)

    assert not is_version_validated(project, deployment, {})


def test_unmirrored_environment_does_not_pass_gate(tmp_path):
    store = build_store(tmp_path)
    project = _gitops_project(store, production_version="v1")
    create_deployment(store, project, "v1", deployment_id="d1")
    recorder = FakeRecorder()
    controller = build_controller(store, recorder)

    result = controller.reconcile("default", "site")

    assert isinstance(result.error, ValidationFailedError)
    assert result.error.reason == ValidationFailedError.NOT_VALIDATED
    assert production_versions(store) == []
    assert "VersionPromoted" not in recorder.reasons()
    assert store.get(Project, "default", "site").status.validation_history == []


def test_mirrored_preview_environment_passes_gate(tmp_path):
    store = build_store(tmp_path)
    project = _gitops_project(store, production_version="v1")
    create_deployment(store, project, "v1", deployment_id="d1")

    deployment = set_status(store, "default", "site-v1", environment=Environment.PREVIEW)

    assert is_version_validated(project, deployment, {})
