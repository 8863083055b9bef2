from release_controller.errors import NotFoundError, ValidationFailedError
from release_controller.models import (
    ConditionStatus,
    DeclarativeConfig,
    Environment,
    Project,
    ProjectSpec,
    find_condition,
)

from fakes import (
    FakeRecorder,
    build_controller,
    build_store,
    create_deployment,
    create_project,
    deployments_by_version,
    production_versions,
    version,
)


def test_latest_target_promotes_first_declared_version(tmp_path):
    store = build_store(tmp_path)
    create_project(store, spec=ProjectSpec(versions=[version("v1"), version("v2")], production_target="latest"))
    controller = build_controller(store)

    result = controller.reconcile("default", "site")

    assert result.ready
    assert result.promoted
    deployments = deployments_by_version(store)
    assert deployments["v1"].spec.environment == Environment.PRODUCTION
    assert deployments["v2"].spec.environment == Environment.PREVIEW


def test_converged_project_makes_no_deployment_writes(tmp_path):
    store = build_store(tmp_path)
    create_project(store, spec=ProjectSpec(versions=[version("v1"), version("v2")], production_target="v2"))
    controller = build_controller(store)
    controller.reconcile("default", "site")
    store.reset()

    result = controller.reconcile("default", "site")

    assert result.ready
    assert not result.promoted
    assert store.deployment_mutations() == []
    assert production_versions(store) == ["v2"]


def test_retargeting_moves_production(tmp_path):
    store = build_store(tmp_path)
    project = create_project(store, spec=ProjectSpec(versions=[version("v1"), version("v2")], production_target="v1"))
    recorder = FakeRecorder()
    controller = build_controller(store, recorder)
    controller.reconcile("default", "site")

    project = store.get(Project, "default", "site")
    project.spec.production_target = "v2"
    store.update(project)
    controller.reconcile("default", "site")

    assert production_versions(store) == ["v2"]
    assert "ProductionDemoted" in recorder.reasons()


def test_missing_target_fails_with_event_and_short_requeue(tmp_path):
    store = build_store(tmp_path)
    create_project(store, spec=ProjectSpec(versions=[version("v1")], production_target="v9"))
    recorder = FakeRecorder()
    controller = build_controller(store, recorder)

    result = controller.reconcile("default", "site")

    assert isinstance(result.error, NotFoundError)
    assert result.requeue_after == controller.settings.short_requeue_seconds
    assert "ProductionTargetNotFound" in recorder.reasons()
    assert "VersionReconcileFailed" in recorder.reasons()
    assert production_versions(store) == []
    ready = find_condition(store.get(Project, "default", "site").status.conditions, "Ready")
    assert ready.status == ConditionStatus.FALSE
    assert "v9" in ready.message


def test_latest_target_without_versions_is_invalid(tmp_path):
    store = build_store(tmp_path)
    create_project(store, spec=ProjectSpec(production_target="latest"))
    recorder = FakeRecorder()
    controller = build_controller(store, recorder)

    result = controller.reconcile("default", "site")

    assert isinstance(result.error, ValidationFailedError)
    assert result.error.reason == ValidationFailedError.PRODUCTION_TARGET_INVALID
    assert "ProductionTargetInvalid" in recorder.reasons()


def test_unmanaged_target_is_not_promoted(tmp_path):
    store = build_store(tmp_path)
    project = create_project(store, spec=ProjectSpec(production_target="manual"))
    create_deployment(store, project, "manual", managed=False)
    controller = build_controller(store)

    result = controller.reconcile("default", "site")

    assert isinstance(result.error, NotFoundError)
    assert production_versions(store) == []


def test_converges_to_single_production_from_many(tmp_path):
    store = build_store(tmp_path)
    project = create_project(
        store,
        spec=ProjectSpec(
            version_management=DeclarativeConfig(versions=[version("v1"), version("v2"), version("v3")],
                                                 production_target="v3"),
        ),
    )
    create_deployment(store, project, "v1", environment=Environment.PRODUCTION)
    create_deployment(store, project, "v2", environment=Environment.PRODUCTION)
    create_deployment(store, project, "other", environment=Environment.PRODUCTION, managed=False)
    controller = build_controller(store)

    controller.reconcile("default", "site")

    assert production_versions(store) == ["v3"]


def test_no_target_leaves_environments_alone(tmp_path):
    store = build_store(tmp_path)
    project = create_project(store, spec=ProjectSpec(versions=[version("v1")]))
    create_deployment(store, project, "v0", environment=Environment.PRODUCTION)
    controller = build_controller(store)

    result = controller.reconcile("default", "site")

    assert result.ready
    assert production_versions(store) == ["v0"]
