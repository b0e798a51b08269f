"""Tests for the uv adapter."""

import pytest

from pkg_bottles.errors import PackageManagerError
from pkg_bottles.package_managers.uv import UVAdapter
from pkg_bottles.types import InstallOptions, Manifest, NoEnvironment, PackageList

PYPROJECT = """\
[project]
name = "demo"
version = "0.1.0"
requires-python = ">=3.10"
authors = [{ name = "Ada" }]
dependencies = ["requests>=2.0", "click"]

[project.optional-dependencies]
docs = ["sphinx>=7"]

[dependency-groups]
dev = ["pytest>=7", { include-group = "lint" }]
lint = ["ruff"]
"""

UV_LOCK = """\
version = 1
revision = 2
requires-python = ">=3.10"

[[package]]
name = "requests"
version = "2.31.0"

[[package]]
name = "click"
version = "8.1.7"

[[package]]
name = "pytest"
version = "8.0.0"
"""


@pytest.fixture
def adapter(fake_shell, volume_controller, environment_info, project_dir, host_environ):
    return UVAdapter(fake_shell, volume_controller, environment_info, project_dir, host_environ)


@pytest.mark.asyncio
async def test_lock_file_end_to_end(adapter, project_dir):
    """Lock file raises confidence and its pins replace manifest ranges"""
    (project_dir / "pyproject.toml").write_text('[project]\nname = "demo"\ndependencies = ["requests>=2.0"]\n')

    bare = await adapter.detect_project(project_dir)
    assert bare.detected
    assert bare.confidence == pytest.approx(0.5)

    (project_dir / "uv.lock").write_text(UV_LOCK)
    locked = await adapter.detect_project(project_dir)
    assert locked.confidence >= 0.95

    manifest = await adapter.parse_manifest(project_dir)
    assert manifest.dependencies == {"requests": "2.31.0"}


@pytest.mark.asyncio
async def test_detection_ordering(adapter, project_dir):
    """bare manifest < lock file < workspace configuration"""
    (project_dir / "pyproject.toml").write_text('[project]\nname = "demo"\n')
    bare = await adapter.detect_project(project_dir)

    (project_dir / "uv.lock").write_text(UV_LOCK)
    locked = await adapter.detect_project(project_dir)

    (project_dir / "pyproject.toml").write_text(
        '[project]\nname = "demo"\n\n[tool.uv.workspace]\nmembers = ["packages/*"]\n'
    )
    workspace = await adapter.detect_project(project_dir)

    assert bare.confidence < locked.confidence < workspace.confidence
    assert workspace.metadata["is_workspace"]


@pytest.mark.parametrize(
    "pyproject,expected,detected",
    [
        ('[project]\nname = "x"\n\n[tool.uv]\n', 0.9, True),
        ('[project]\nname = "x"\n\n[tool.uv.sources]\nlib = { path = "../lib" }\n', 0.92, True),
        ('[dependency-groups]\ndev = ["pytest"]\n', 0.85, True),
        ('[project]\nname = "x"\n\n[tool.poetry]\nname = "x"\n', 0.2, False),
        ("[project\nname =", 0.25, False),
    ],
)
@pytest.mark.asyncio
async def test_detection_signals(adapter, project_dir, pyproject, expected, detected):
    (project_dir / "pyproject.toml").write_text(pyproject)

    result = await adapter.detect_project(project_dir)

    assert result.confidence == pytest.approx(expected)
    assert result.detected is detected


@pytest.mark.asyncio
async def test_competing_tool_ignored_with_lock(adapter, project_dir):
    (project_dir / "pyproject.toml").write_text('[project]\nname = "x"\n\n[tool.pdm]\n')
    (project_dir / "uv.lock").write_text(UV_LOCK)

    result = await adapter.detect_project(project_dir)

    assert result.confidence == pytest.approx(0.95)
    assert result.metadata["competing_tools"] == ["pdm"]


@pytest.mark.asyncio
async def test_parse_manifest(adapter, project_dir):
    (project_dir / "pyproject.toml").write_text(PYPROJECT)
    (project_dir / "uv.lock").write_text(UV_LOCK)

    manifest = await adapter.parse_manifest(project_dir)

    assert isinstance(manifest, Manifest)
    assert manifest.name == "demo"
    assert manifest.author == "Ada"
    assert manifest.python_requires == ">=3.10"
    assert manifest.dependencies == {"requests": "2.31.0", "click": "8.1.7"}
    assert manifest.dev_dependencies == {"pytest": "8.0.0", "ruff": "*"}
    assert manifest.optional_dependencies == {"sphinx[docs]": ">=7"}
    assert manifest.metadata["lock_version"] == 1
    assert manifest.metadata["lock_revision"] == 2
    assert manifest.metadata["dependency_groups"] == ["dev", "lint"]


@pytest.mark.asyncio
async def test_parse_manifest_invalid_toml(adapter, project_dir):
    (project_dir / "pyproject.toml").write_text("[project\nname =")

    with pytest.raises(PackageManagerError) as exc_info:
        await adapter.parse_manifest(project_dir)
    assert exc_info.value.code == "MANIFEST_PARSE_ERROR"


@pytest.mark.asyncio
async def test_parse_manifest_ignores_broken_lock(adapter, project_dir):
    (project_dir / "pyproject.toml").write_text(PYPROJECT)
    (project_dir / "uv.lock").write_text("not = [valid")

    manifest = await adapter.parse_manifest(project_dir)

    assert manifest.dependencies["requests"] == ">=2.0"
    assert manifest.metadata["lock_version"] is None


@pytest.mark.asyncio
async def test_install_in_project_uses_add(adapter, fake_shell, project_dir):
    (project_dir / "pyproject.toml").write_text(PYPROJECT)

    await adapter.install_packages(["httpx>=0.27"])
    assert "uv add 'httpx>=0.27'" in fake_shell.last

    await adapter.install_packages(["pytest-cov"], InstallOptions(dev=True))
    assert "uv add --dev pytest-cov" in fake_shell.last

    await adapter.install_packages(["furo"], InstallOptions(optional="docs", force=True))
    assert "uv add --optional docs --reinstall furo" in fake_shell.last


@pytest.mark.asyncio
async def test_install_in_project_without_packages_syncs(adapter, fake_shell, project_dir):
    (project_dir / "pyproject.toml").write_text(PYPROJECT)

    result = await adapter.install_packages([])

    assert "uv sync" in fake_shell.last
    assert result.packages == []


@pytest.mark.asyncio
async def test_install_outside_project_creates_venv(adapter, fake_shell, project_dir):
    await adapter.install_packages(["requests"], InstallOptions(index="https://pypi.example.com/simple"))

    assert fake_shell.ran(r"uv venv --clear")
    assert "uv pip install --index-url https://pypi.example.com/simple requests" in fake_shell.last


@pytest.mark.asyncio
async def test_install_outside_project_requires_packages(adapter):
    with pytest.raises(PackageManagerError) as exc_info:
        await adapter.install_packages([])
    assert exc_info.value.code == "NO_PACKAGES"


@pytest.mark.asyncio
async def test_uninstall(adapter, fake_shell, project_dir):
    await adapter.uninstall_packages(["requests"])
    assert "uv pip uninstall requests" in fake_shell.last

    (project_dir / "pyproject.toml").write_text(PYPROJECT)
    await adapter.uninstall_packages(["requests"])
    assert "uv remove requests" in fake_shell.last


@pytest.mark.asyncio
async def test_environment_variables(adapter, project_dir, volume_controller, host_environ):
    adapter.environ = {**host_environ, "UV_PYTHON_INSTALL_MIRROR": "https://mirror.example.com"}

    env = await adapter.get_environment_variables(InstallOptions(cwd=project_dir, env={"UV_NO_PROGRESS": "0"}))

    venv = project_dir / ".venv"
    assert env["UV_CACHE_DIR"] == str(volume_controller.get_mount("uv").cache_path)
    assert env["UV_PROJECT_ENVIRONMENT"] == str(venv)
    assert env["VIRTUAL_ENV"] == str(venv)
    assert env["PATH"].startswith(f"{venv / 'bin'}:")
    assert env["UV_PYTHON_PREFERENCE"] == "only-system"
    assert env["FORCE_COLOR"] == "0"
    assert env["UV_PYTHON_INSTALL_MIRROR"] == "https://mirror.example.com"
    # caller overrides win
    assert env["UV_NO_PROGRESS"] == "0"


@pytest.mark.asyncio
async def test_installed_packages(adapter, fake_shell, project_dir):
    assert isinstance(await adapter.get_installed_packages(project_dir), NoEnvironment)

    (project_dir / ".venv").mkdir()
    (project_dir / "pyproject.toml").write_text(PYPROJECT)
    fake_shell.on(
        r"uv pip list --format json",
        '[{"name": "pytest", "version": "8.0.0"}, {"name": "Sphinx", "version": "7.2.0"}]',
    )

    result = await adapter.get_installed_packages(project_dir)

    assert isinstance(result, PackageList)
    pytest_info, sphinx = result.packages
    assert pytest_info.is_dev
    assert sphinx.is_optional
    assert sphinx.metadata["manager"] == "uv"


@pytest.mark.asyncio
async def test_installed_packages_tolerates_bad_manifest(adapter, fake_shell, project_dir):
    (project_dir / ".venv").mkdir()
    (project_dir / "pyproject.toml").write_text("[project\n")
    fake_shell.on(r"uv pip list", '[{"name": "six", "version": "1.16.0"}]')

    result = await adapter.get_installed_packages(project_dir)

    assert [p.name for p in result.packages] == ["six"]


@pytest.mark.asyncio
async def test_create_environment(adapter, fake_shell, project_dir):
    await adapter.create_environment(project_dir, python_version="3.12")
    assert "uv venv --clear --python=3.12" in fake_shell.last


@pytest.mark.asyncio
async def test_activate_environment(adapter, project_dir):
    with pytest.raises(PackageManagerError) as exc_info:
        await adapter.activate_environment(project_dir)
    assert exc_info.value.code == "VENV_NOT_FOUND"
    assert "uv venv" in exc_info.value.suggestion

    (project_dir / ".venv").mkdir()
    env = await adapter.activate_environment(project_dir)

    assert env["VIRTUAL_ENV"] == str(project_dir / ".venv")
    assert env["PYTHON"] == str(project_dir / ".venv" / "bin" / "python")


@pytest.mark.asyncio
async def test_cache_paths(adapter, volume_controller):
    await volume_controller.mount("uv")
    paths = adapter.get_cache_paths()

    root = volume_controller.get_mount("uv").cache_path
    assert paths.global_dir == root
    assert paths.additional == [root / "builds", root / "wheels", root / "git"]


@pytest.mark.asyncio
async def test_validate_installation(adapter, fake_shell, project_dir):
    (project_dir / "pyproject.toml").write_text(PYPROJECT)
    fake_shell.on(r"uv --version", "uv 0.4.18 (7b55e9790 2024-10-01)")

    result = await adapter.validate_installation(project_dir)

    assert result.valid
    assert result.environment["uv_version"].startswith("0.4.18")
    assert any("uv lock" in warning for warning in result.warnings)
    assert any("uv venv" in warning for warning in result.warnings)


@pytest.mark.asyncio
async def test_validate_missing_uv(adapter, fake_shell, project_dir):
    fake_shell.on(r"uv --version", exit_code=127)

    result = await adapter.validate_installation(project_dir)

    assert not result.valid
    assert "uv is not installed or not accessible" in result.issues
