"""Tests for the pip adapter."""

import pytest

from pkg_bottles.errors import PackageManagerError, ShellError
from pkg_bottles.package_managers.pip import PipAdapter
from pkg_bottles.types import (
    InstallOptions,
    Manifest,
    NoEnvironment,
    NoManifest,
    PackageList,
    TimeoutReason,
)


@pytest.fixture
def adapter(fake_shell, volume_controller, environment_info, project_dir, host_environ):
    return PipAdapter(fake_shell, volume_controller, environment_info, project_dir, host_environ)


@pytest.mark.asyncio
async def test_no_manifest_not_detected(adapter, project_dir):
    result = await adapter.detect_project(project_dir)
    assert not result.detected
    assert result.confidence == 0.0


@pytest.mark.asyncio
async def test_requirements_detected(adapter, project_dir):
    (project_dir / "requirements.txt").write_text("requests\n")

    result = await adapter.detect_project(project_dir)

    assert result.detected
    assert result.confidence == 0.8
    assert result.metadata["has_requirements"]


@pytest.mark.asyncio
async def test_competing_tool_caps_confidence(adapter, project_dir):
    (project_dir / "pyproject.toml").write_text('[project]\nname = "x"\n\n[tool.uv]\n')

    result = await adapter.detect_project(project_dir)

    assert not result.detected
    assert result.confidence == 0.4
    assert result.metadata["competing_tools"] == ["uv"]


@pytest.mark.asyncio
async def test_lock_file_raises_confidence(adapter, project_dir):
    (project_dir / "setup.py").write_text("from setuptools import setup\nsetup(name='x')\n")
    setup_only = await adapter.detect_project(project_dir)

    (project_dir / "requirements.lock").write_text("requests==2.31.0\n")
    locked = await adapter.detect_project(project_dir)

    assert setup_only.confidence == 0.7
    assert locked.confidence == 0.9


@pytest.mark.asyncio
async def test_parse_manifest_layers_files(adapter, project_dir):
    """Requirements, setup.cfg and lock pins combine into one manifest"""
    (project_dir / "requirements.txt").write_text("requests>=2.0\nflask\n")
    (project_dir / "requirements-dev.txt").write_text("pytest>=7\n")
    (project_dir / "setup.cfg").write_text(
        "[metadata]\n"
        "name = demo\n"
        "version = 1.2.3\n"
        "\n"
        "[options]\n"
        "python_requires = >=3.10\n"
        "install_requires =\n"
        "    click>=8\n"
        "\n"
        "[options.extras_require]\n"
        "docs =\n"
        "    sphinx>=7\n"
    )
    (project_dir / "requirements.lock").write_text("requests==2.31.0\npytest==8.0.0\n")

    manifest = await adapter.parse_manifest(project_dir)

    assert isinstance(manifest, Manifest)
    assert manifest.name == "demo"
    assert manifest.version == "1.2.3"
    assert manifest.python_requires == ">=3.10"
    assert manifest.dependencies == {"requests": "==2.31.0", "flask": "*", "click": ">=8"}
    assert manifest.dev_dependencies == {"pytest": "==8.0.0"}
    assert manifest.optional_dependencies == {"sphinx[docs]": ">=7"}
    assert manifest.metadata["has_lock_file"]


@pytest.mark.asyncio
async def test_hashed_lock_pins(adapter, project_dir):
    """pip-compile --generate-hashes output still pins plain versions"""
    (project_dir / "requirements.txt").write_text("requests>=2.0\n")
    (project_dir / "requirements.lock").write_text(
        "requests==2.31.0 \\\n"
        "    --hash=sha256:abc123\n"
    )

    manifest = await adapter.parse_manifest(project_dir)

    assert manifest.dependencies == {"requests": "==2.31.0"}


@pytest.mark.asyncio
async def test_parse_manifest_setup_py(adapter, project_dir):
    (project_dir / "setup.py").write_text(
        "from setuptools import setup\n"
        "setup(\n"
        "    name='legacy',\n"
        "    version='0.1',\n"
        "    install_requires=['six>=1.0', 'attrs'],\n"
        "    extras_require={'test': ['pytest']},\n"
        ")\n"
    )

    manifest = await adapter.parse_manifest(project_dir)

    assert manifest.name == "legacy"
    assert manifest.dependencies == {"six": ">=1.0", "attrs": "*"}
    assert manifest.optional_dependencies == {"pytest[test]": "*"}


@pytest.mark.asyncio
async def test_parse_manifest_skips_broken_pyproject(adapter, project_dir):
    (project_dir / "requirements.txt").write_text("requests\n")
    (project_dir / "pyproject.toml").write_text("[project\nname=")

    manifest = await adapter.parse_manifest(project_dir)

    assert manifest.dependencies == {"requests": "*"}


@pytest.mark.asyncio
async def test_parse_manifest_without_files(adapter, project_dir):
    result = await adapter.parse_manifest(project_dir)
    assert isinstance(result, NoManifest)
    assert "requirements.txt" in result.searched


@pytest.mark.asyncio
async def test_install_packages_command(adapter, fake_shell, project_dir):
    result = await adapter.install_packages(
        ["requests>=2", "flask"],
        InstallOptions(force=True, index="https://pypi.example.com/simple", extra_args=["--no-deps"]),
    )

    command = fake_shell.last
    assert "pip install --force-reinstall --index-url https://pypi.example.com/simple --no-deps 'requests>=2' flask" in command
    assert f"cd {project_dir.resolve()}" in command
    assert "export PIP_DISABLE_PIP_VERSION_CHECK='1'" in command
    assert "export PIP_CACHE_DIR=" in command
    assert result.packages == ["requests>=2", "flask"]
    assert result.result.exit_code == 0


@pytest.mark.asyncio
async def test_install_from_requirements(adapter, fake_shell, project_dir):
    (project_dir / "requirements.txt").write_text("requests\n")

    await adapter.install_packages([])

    assert f"-r {project_dir.resolve() / 'requirements.txt'}" in fake_shell.last


@pytest.mark.asyncio
async def test_install_without_requirements(adapter):
    with pytest.raises(PackageManagerError) as exc_info:
        await adapter.install_packages([])
    assert exc_info.value.code == "NO_REQUIREMENTS"


@pytest.mark.asyncio
async def test_install_failure(adapter, fake_shell):
    fake_shell.on(r"pip install", exit_code=1)

    with pytest.raises(PackageManagerError) as exc_info:
        await adapter.install_packages(["nope"])

    assert exc_info.value.code == "COMMAND_FAILED"
    assert exc_info.value.details["exit_code"] == 1


@pytest.mark.asyncio
async def test_install_timeout(adapter, fake_shell):
    fake_shell.on(r"pip install", exit_code=-1, timed_out=True)

    with pytest.raises(PackageManagerError) as exc_info:
        await adapter.install_packages(["slow"])

    assert exc_info.value.code == "COMMAND_TIMEOUT"
    assert exc_info.value.details["reason"] == "inactivity"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reason,message",
    [
        (TimeoutReason.ABSOLUTE_MAXIMUM, "exceeded its absolute time limit"),
        (TimeoutReason.ERROR_DETECTED, "reported an error and did not exit"),
    ],
)
async def test_install_timeout_reasons(adapter, fake_shell, reason, message):
    fake_shell.on(r"pip install", exit_code=-1, timeout_reason=reason)

    with pytest.raises(PackageManagerError) as exc_info:
        await adapter.install_packages(["stuck"])

    assert exc_info.value.code == "COMMAND_TIMEOUT"
    assert message in str(exc_info.value)
    assert exc_info.value.details["reason"] == reason.value


@pytest.mark.asyncio
async def test_shell_failure_becomes_execution_error(adapter, fake_shell, monkeypatch):
    async def dead(command, timeout=None):
        raise ShellError("Shell process is not alive", code="SHELL_NOT_ALIVE")

    monkeypatch.setattr(fake_shell, "execute", dead)

    with pytest.raises(PackageManagerError) as exc_info:
        await adapter.install_packages(["requests"])

    assert exc_info.value.code == "EXECUTION_ERROR"
    assert isinstance(exc_info.value.__cause__, ShellError)


@pytest.mark.asyncio
async def test_install_activates_venv(adapter, fake_shell, project_dir):
    (project_dir / ".venv" / "bin").mkdir(parents=True)

    await adapter.install_packages(["requests"])

    assert f". {project_dir.resolve() / '.venv' / 'bin' / 'activate'} && pip install" in fake_shell.last


@pytest.mark.asyncio
async def test_uninstall_command(adapter, fake_shell):
    result = await adapter.uninstall_packages(["requests"])

    assert "pip uninstall -y requests" in fake_shell.last
    assert result.packages == ["requests"]


@pytest.mark.asyncio
async def test_installed_packages_without_venv(adapter, project_dir):
    result = await adapter.get_installed_packages(project_dir)
    assert isinstance(result, NoEnvironment)


@pytest.mark.asyncio
async def test_installed_packages(adapter, fake_shell, project_dir):
    (project_dir / ".venv").mkdir()
    (project_dir / "requirements-dev.txt").write_text("pytest\n")
    fake_shell.on(
        r"pip list --format json",
        "[notice] A new release of pip is available\n"
        '[{"name": "pytest", "version": "8.0.0"},'
        ' {"name": "demo", "version": "0.1", "editable_project_location": "/src/demo"}]',
    )

    result = await adapter.get_installed_packages(project_dir)

    assert isinstance(result, PackageList)
    pytest_info, demo = result.packages
    assert pytest_info.is_dev
    assert pytest_info.location == "site-packages"
    assert demo.metadata["editable"]
    assert demo.location == "/src/demo"


@pytest.mark.asyncio
async def test_installed_packages_failure(adapter, fake_shell, project_dir):
    (project_dir / ".venv").mkdir()
    fake_shell.on(r"pip list", exit_code=2)

    with pytest.raises(PackageManagerError) as exc_info:
        await adapter.get_installed_packages(project_dir)
    assert exc_info.value.code == "LIST_FAILED"


@pytest.mark.asyncio
async def test_create_environment(adapter, fake_shell, project_dir):
    await adapter.create_environment(project_dir)

    assert fake_shell.ran(rf"python3 -m venv --clear {project_dir / '.venv'}")
    assert fake_shell.ran(r"pip install --upgrade pip")


@pytest.mark.asyncio
async def test_create_environment_tolerates_upgrade_failure(adapter, fake_shell, project_dir):
    fake_shell.on(r"--upgrade pip", exit_code=1)

    await adapter.create_environment(project_dir, python_version="3.12")

    assert fake_shell.ran(r"python3\.12 -m venv")


@pytest.mark.asyncio
async def test_activate_environment(adapter, project_dir):
    with pytest.raises(PackageManagerError) as exc_info:
        await adapter.activate_environment(project_dir)
    assert exc_info.value.code == "VENV_NOT_FOUND"

    (project_dir / "venv").mkdir()
    env = await adapter.activate_environment(project_dir)

    assert env["VIRTUAL_ENV"] == str(project_dir / "venv")
    assert env["PATH"].startswith(str(project_dir / "venv" / "bin"))
    assert env["PIP_REQUIRE_VIRTUALENV"] == "true"


@pytest.mark.asyncio
async def test_environment_variables_mount_cache(adapter, volume_controller):
    env = await adapter.get_environment_variables(InstallOptions(env={"EXTRA": "1"}))

    mount = volume_controller.get_mount("pip")
    assert mount.active
    assert env["PIP_CACHE_DIR"] == str(mount.cache_path)
    assert env["PIP_PROGRESS_BAR"] == "off"
    assert env["EXTRA"] == "1"
    assert "PS1" not in env


@pytest.mark.asyncio
async def test_validate_installation(adapter, fake_shell, project_dir):
    fake_shell.on(r"pip --version", "pip 20.3.4 from /usr/lib/python3/dist-packages/pip (python 3.9)")
    fake_shell.on(r"python3 --version", "Python 3.9.2")
    fake_shell.on(r"pip-compile --version", exit_code=127)

    result = await adapter.validate_installation(project_dir)

    assert result.valid
    assert result.environment["pip_version"] == "20.3.4"
    assert result.environment["python_version"] == "Python 3.9.2"
    assert any("outdated" in warning for warning in result.warnings)
    assert any("requirements.txt" in warning for warning in result.warnings)
    assert "pip_tools_version" not in result.environment


@pytest.mark.asyncio
async def test_validate_missing_pip(adapter, fake_shell, project_dir):
    fake_shell.on(r"pip --version", exit_code=127)

    result = await adapter.validate_installation(project_dir)

    assert not result.valid
    assert "pip is not installed or not accessible" in result.issues
