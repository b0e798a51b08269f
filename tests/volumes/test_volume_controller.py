"""Tests for bottle cache volumes."""

import json

import pytest

from pkg_bottles.errors import VolumeError
from pkg_bottles.types import PackageManager, VolumeConfig
from pkg_bottles.volumes.controller import INIT_MARKER, UNMOUNT_MARKER, VolumeController


@pytest.mark.asyncio
async def test_mount_is_idempotent(volume_controller):
    first = await volume_controller.mount(PackageManager.PIP)
    second = await volume_controller.mount(PackageManager.PIP)

    assert first is second
    assert second.active
    assert len(volume_controller.get_all_mounts()) == 1


@pytest.mark.asyncio
async def test_mount_creates_cache_tree(volume_controller, tmp_path):
    mount = await volume_controller.mount(PackageManager.UV)

    assert mount.cache_path == tmp_path / "volumes" / "uv"
    assert mount.mount_path == "/bottle/pip-cache"
    for subdir in ("builds", "wheels", "git"):
        assert (mount.cache_path / subdir).is_dir()


@pytest.mark.asyncio
async def test_mount_custom_path(volume_controller, tmp_path):
    custom = tmp_path / "custom-pip"
    mount = await volume_controller.mount(PackageManager.PIP, custom)

    assert mount.cache_path == custom
    assert custom.is_dir()


@pytest.mark.asyncio
async def test_mount_without_auto_create(tmp_path, host_environ):
    controller = VolumeController(
        "strict",
        VolumeConfig(
            base_cache_dir=tmp_path / "strict",
            auto_create_dirs=False,
            skip_auto_detection=True,
        ),
        host_environ,
    )

    with pytest.raises(VolumeError) as exc_info:
        await controller.mount(PackageManager.PIP)

    assert exc_info.value.code == "CACHE_NOT_ACCESSIBLE"
    assert exc_info.value.manager == "pip"


@pytest.mark.asyncio
async def test_env_vars_only_for_active_mounts(volume_controller):
    await volume_controller.mount(PackageManager.PIP)
    await volume_controller.mount(PackageManager.NPM)
    await volume_controller.unmount(PackageManager.NPM)

    env = volume_controller.get_mount_env_vars()

    assert "PIP_CACHE_DIR" in env
    assert "npm_config_cache" not in env


@pytest.mark.asyncio
async def test_unmount_writes_marker(volume_controller):
    mount = await volume_controller.mount(PackageManager.PIP)

    assert await volume_controller.unmount(PackageManager.PIP)
    assert not mount.active

    metadata = json.loads((mount.cache_path / UNMOUNT_MARKER).read_text())
    assert metadata["manager"] == "pip"
    assert "unmountedAt" in metadata


@pytest.mark.asyncio
async def test_unmount_unknown_manager(volume_controller):
    assert not await volume_controller.unmount(PackageManager.CARGO)


@pytest.mark.asyncio
async def test_remount_reactivates(volume_controller):
    mount = await volume_controller.mount(PackageManager.PIP)
    await volume_controller.unmount(PackageManager.PIP)

    again = await volume_controller.mount(PackageManager.PIP)

    assert again is mount
    assert again.active


@pytest.mark.asyncio
async def test_stats_cover_active_mounts(volume_controller):
    pip = await volume_controller.mount(PackageManager.PIP)
    npm = await volume_controller.mount(PackageManager.NPM)
    (pip.cache_path / "wheels" / "a.whl").write_bytes(b"x" * 10)
    (npm.cache_path / "blob").write_bytes(b"y" * 5)
    await volume_controller.unmount(PackageManager.NPM)

    stats = await volume_controller.get_stats()

    assert list(stats.managers) == [PackageManager.PIP]
    assert stats.active_mounts == 1
    assert stats.total_size == 10
    assert stats.managers[PackageManager.PIP].last_modified is not None


@pytest.mark.asyncio
async def test_stats_skip_unreadable_entries(volume_controller):
    mount = await volume_controller.mount(PackageManager.PIP)
    (mount.cache_path / "real").write_bytes(b"abc")
    (mount.cache_path / "dangling").symlink_to(mount.cache_path / "nowhere")

    stats = await volume_controller.get_stats()

    assert stats.total_size == 3


@pytest.mark.asyncio
async def test_clear_empties_cache(volume_controller):
    mount = await volume_controller.mount(PackageManager.PIP)
    (mount.cache_path / "wheels" / "a.whl").write_bytes(b"x")

    await volume_controller.clear(PackageManager.PIP)

    assert not (mount.cache_path / "wheels" / "a.whl").exists()
    assert (mount.cache_path / "wheels").is_dir()
    assert mount.active


@pytest.mark.asyncio
async def test_initialize_seeds_detected_managers(tmp_path, host_environ):
    project = tmp_path / "proj"
    project.mkdir()
    (project / "requirements.txt").write_text("requests\n")

    controller = VolumeController(
        "seeded",
        VolumeConfig(base_cache_dir=tmp_path / "seeded", project_dir=project),
        host_environ,
    )
    await controller.initialize()

    mount = controller.get_mount(PackageManager.PIP)
    assert mount is not None
    assert not mount.active
    assert controller.get_active_mounts() == []


@pytest.mark.asyncio
async def test_initialize_marks_system_cache_source(tmp_path, host_environ):
    home = tmp_path / "home"
    (home / ".cache" / "pip").mkdir(parents=True)
    environ = {**host_environ, "HOME": str(home)}

    controller = VolumeController(
        "marked",
        VolumeConfig(base_cache_dir=tmp_path / "marked", detected_managers=[PackageManager.PIP]),
        environ,
    )
    await controller.initialize()

    marker = json.loads((tmp_path / "marked" / "pip" / INIT_MARKER).read_text())
    assert marker["sourceCache"] == str(home / ".cache" / "pip")
    assert marker["strategy"] == "isolated"


@pytest.mark.asyncio
async def test_default_base_uses_cache_root(tmp_path, host_environ):
    controller = VolumeController("rooted", VolumeConfig(skip_auto_detection=True), host_environ)

    assert controller.base_cache_dir == (tmp_path / "cache-root").resolve() / "bottles" / "cache"


@pytest.mark.asyncio
async def test_cleanup_unmounts_everything(volume_controller):
    await volume_controller.mount(PackageManager.PIP)
    await volume_controller.cleanup()

    assert volume_controller.get_all_mounts() == []
    assert not volume_controller.is_initialized
