import pytest

from release_controller.controller import ControllerSettings, ProjectReconciler
from release_controller.errors import BackendUnavailableError, NotFoundError, TemplateError
from release_controller.models import (
    ConditionStatus,
    DeclarativeConfig,
    Deployment,
    Project,
    ProjectSpec,
    S3SourceTemplate,
    SourceTemplate,
    VersionPolicy,
    utc_now,
)

from fakes import (
    FakeRecorder,
    at,
    build_controller,
    build_store,
    create_deployment,
    create_project,
    deployments_by_version,
    version,
)


def test_missing_project_is_a_quiet_noop(tmp_path):
    store = build_store(tmp_path)
    controller = build_controller(store)

    result = controller.reconcile("default", "ghost")

    assert result.ready
    assert result.requeue_after is None


def test_each_policy_has_an_engine(tmp_path):
    store = build_store(tmp_path)
    controller = build_controller(store)
    project = create_project(store)

    assert controller.engine_for(project).policy == VersionPolicy.DECLARATIVE


def test_requeue_delay_follows_error_class(tmp_path):
    controller = build_controller(build_store(tmp_path), short_requeue_seconds=5, medium_requeue_seconds=45)

    assert controller.requeue_for(NotFoundError("x")) == 5
    assert controller.requeue_for(BackendUnavailableError("x")) == 45


def test_bad_template_fails_pass_but_still_prunes(tmp_path):
    store = build_store(tmp_path)
    template = SourceTemplate(type="s3", s3=S3SourceTemplate(bucket="b", key_template="{{.Branch}}/{{.Version}}"))
    project = create_project(
        store,
        spec=ProjectSpec(
            revision_history_limit=1,
            version_management=DeclarativeConfig(version_names=["v9"], source_template=template),
        ),
    )
    create_deployment(store, project, "v1", created_at=at(1))
    create_deployment(store, project, "v2", created_at=at(2))
    recorder = FakeRecorder()
    controller = build_controller(store, recorder)

    result = controller.reconcile("default", "site")

    assert isinstance(result.error, TemplateError)
    assert result.requeue_after == controller.settings.short_requeue_seconds
    assert recorder.reasons() == ["VersionReconcileFailed"]
    assert sorted(deployments_by_version(store)) == ["v2"]
    status = store.get(Project, "default", "site").status
    assert status.conditions[0].status == ConditionStatus.FALSE


def test_delete_project_removes_owned_deployments(tmp_path):
    store = build_store(tmp_path)
    project = create_project(store, spec=ProjectSpec(versions=[version("v1"), version("v2")]))
    other = create_project(store, name="other")
    controller = build_controller(store)
    controller.reconcile("default", "site")
    create_deployment(store, other, "v1")
    create_deployment(store, project, "manual", managed=False)

    deleted = controller.delete_project("default", "site")

    assert deleted == 2
    with pytest.raises(NotFoundError):
        store.get(Project, "default", "site")
    remaining = sorted(d.metadata.name for d in store.list(Deployment, "default"))
    assert remaining == ["other-v1", "site-manual"]


def test_delete_project_continues_past_child_failures(tmp_path):
    store = build_store(tmp_path)
    create_project(store, spec=ProjectSpec(versions=[version("v1"), version("v2")]))
    recorder = FakeRecorder()
    controller = build_controller(store, recorder)
    controller.reconcile("default", "site")
    store.fail_deletes = {"site-v1"}

    deleted = controller.delete_project("default", "site")

    assert deleted == 1
    assert "DeleteFailed" in recorder.reasons()
    with pytest.raises(NotFoundError):
        store.get(Project, "default", "site")


def test_delete_missing_project_is_not_found(tmp_path):
    controller = build_controller(build_store(tmp_path))

    with pytest.raises(NotFoundError):
        controller.delete_project("default", "ghost")


def test_marked_project_is_deleted_on_reconcile(tmp_path):
    store = build_store(tmp_path)
    create_project(store, spec=ProjectSpec(versions=[version("v1")]))
    controller = build_controller(store)
    controller.reconcile("default", "site")
    project = store.get(Project, "default", "site")
    project.metadata.deletion_timestamp = utc_now()
    store.update(project)

    result = controller.reconcile("default", "site")

    assert result.ready
    assert store.list(Deployment, "default") == []


def test_default_recorder_persists_events(tmp_path):
    store = build_store(tmp_path)
    create_project(store, spec=ProjectSpec(versions=[version("v1")]))
    controller = ProjectReconciler(store, settings=ControllerSettings(conflict_retry_delay_seconds=0.0))

    controller.reconcile("default", "site")

    events = store.list_events(name="site")
    assert [e["reason"] for e in events] == ["Created"]
    assert events[0]["kind"] == "Project"


def test_event_sink_failure_does_not_fail_the_pass(tmp_path):
    store = build_store(tmp_path)
    create_project(store, spec=ProjectSpec(versions=[version("v1")]))
    store.fail_events = True
    controller = ProjectReconciler(store, settings=ControllerSettings(conflict_retry_delay_seconds=0.0))

    result = controller.reconcile("default", "site")

    assert result.ready
    assert sorted(deployments_by_version(store)) == ["v1"]
