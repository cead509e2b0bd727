from __future__ import annotations

import time

import pytest

from openvac_core.workspace import (
    WorkspaceFactory,
    WorkspaceReaper,
    is_valid_job_id,
)


@pytest.mark.core
def test_create_allocates_private_directories(workspaces, scratch_root) -> None:
    first = workspaces.create("job")
    second = workspaces.create("job")
    assert first.id != second.id
    assert is_valid_job_id(first.id)
    assert first.root == scratch_root / f"job-{first.id}"
    assert first.frames_dir.is_dir()
    assert second.frames_dir.is_dir()


@pytest.mark.core
def test_create_never_reuses_a_directory(scratch_root) -> None:
    factory = WorkspaceFactory(scratch_root, id_factory=lambda: "a" * 32)
    factory.create("job")
    with pytest.raises(FileExistsError):
        factory.create("job")


@pytest.mark.core
def test_create_rejects_malformed_ids(scratch_root) -> None:
    factory = WorkspaceFactory(scratch_root, id_factory=lambda: "../escape")
    with pytest.raises(ValueError):
        factory.create("job")


@pytest.mark.core
def test_destroy_is_idempotent(workspaces) -> None:
    workspace = workspaces.create("job")
    (workspace.frames_dir / "medium").mkdir()
    workspaces.destroy(workspace.root)
    assert not workspace.root.exists()
    workspaces.destroy(workspace.root)


@pytest.mark.core
def test_destroy_refuses_paths_outside_root(workspaces, scratch_root, tmp_path) -> None:
    workspaces.create("job")
    outside = tmp_path / "keep-me"
    outside.mkdir()
    with pytest.raises(ValueError):
        workspaces.destroy(outside)
    with pytest.raises(ValueError):
        workspaces.destroy(scratch_root)
    assert outside.exists()


@pytest.mark.core
def test_scoped_workspace_removed_on_failure(workspaces) -> None:
    with pytest.raises(RuntimeError):
        with workspaces.scoped("preview") as workspace:
            root = workspace.root
            (workspace.frames_dir / "low").mkdir()
            raise RuntimeError("boom")
    assert not root.exists()


@pytest.mark.core
def test_locate_validates_ids(workspaces) -> None:
    workspace = workspaces.create("job")
    assert workspaces.locate(workspace.id) == workspace
    assert workspaces.locate("../" + workspace.id) is None
    assert workspaces.locate(workspace.id.upper()) is None
    assert workspaces.locate("") is None
    assert workspaces.locate("b" * 32) is None


@pytest.mark.core
def test_reap_removes_only_expired_unleased_workspaces(workspaces) -> None:
    old = workspaces.create("job")
    leased = workspaces.create("job")
    now = time.time()
    removed = workspaces.reap(60, now=now)
    assert removed == []

    workspaces.acquire(leased.id)
    removed = workspaces.reap(60, now=now + 120)
    assert removed == [old.root]
    assert leased.root.exists()

    workspaces.release(leased.id)
    assert workspaces.reap(60, now=now + 120) == [leased.root]


@pytest.mark.core
def test_reaper_disabled_without_ttl(workspaces) -> None:
    reaper = WorkspaceReaper(workspaces, ttl_seconds=0, interval_seconds=1)
    reaper.start()
    reaper.stop()
    assert workspaces.create("job").root.exists()


@pytest.mark.core
def test_reaper_run_once(scratch_root) -> None:
    clock = [1000.0]
    factory = WorkspaceFactory(scratch_root, clock=lambda: clock[0])
    workspace = factory.create("job")
    clock[0] = time.time() + 3600
    reaper = WorkspaceReaper(factory, ttl_seconds=60, interval_seconds=60)
    assert reaper.run_once() == [workspace.root]
