import asyncio
import os
import re
from pathlib import Path

import pytest
import pytest_asyncio

from pkg_bottles import environment_detector
from pkg_bottles.shells.shell import Shell
from pkg_bottles.types import (
    CommandResult,
    EnvironmentInfo,
    ShellOptions,
    TimeoutReason,
    ToolAvailability,
    VolumeConfig,
)
from pkg_bottles.volumes.controller import VolumeController


class FakeShell:
    """Records submitted commands and answers from scripted rules.

    Rules are ``(regex, stdout, exit_code, timeout_reason)``; the first rule whose regex
    matches the command wins. Unmatched commands succeed with no output.
    """

    def __init__(self):
        self.commands: list[str] = []
        self.timeouts: list[float | None] = []
        self.rules: list[tuple[re.Pattern, str, int, TimeoutReason | None]] = []

    def on(
        self,
        pattern: str,
        stdout: str = "",
        exit_code: int = 0,
        timed_out: bool = False,
        timeout_reason: TimeoutReason | None = None,
    ) -> None:
        if timed_out and timeout_reason is None:
            timeout_reason = TimeoutReason.INACTIVITY
        self.rules.append((re.compile(pattern), stdout, exit_code, timeout_reason))

    @property
    def last(self) -> str:
        return self.commands[-1]

    def ran(self, pattern: str) -> bool:
        return any(re.search(pattern, command) for command in self.commands)

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        self.commands.append(command)
        self.timeouts.append(timeout)
        await asyncio.sleep(0)
        for regex, stdout, exit_code, timeout_reason in self.rules:
            if regex.search(command):
                return CommandResult(
                    command=command,
                    stdout=stdout,
                    stderr="" if exit_code == 0 else "scripted failure",
                    exit_code=exit_code,
                    duration=0.0,
                    timed_out=timeout_reason is not None,
                    timeout_reason=timeout_reason,
                )
        return CommandResult(command=command, stdout="", stderr="", exit_code=0, duration=0.0)

    async def cleanup(self) -> None:
        pass


@pytest.fixture
def host_environ(tmp_path) -> dict[str, str]:
    """Host environment with CI knobs removed and a private cache root"""
    environ = {
        key: value
        for key, value in os.environ.items()
        if key not in ("CI", "PKG_LOCAL_TIMEOUT_MULTIPLIER", "PIP_AVAILABLE", "UV_AVAILABLE")
    }
    environ["BOTTLE_CACHE_ROOT"] = str(tmp_path / "cache-root")
    return environ


@pytest.fixture
def fake_shell() -> FakeShell:
    return FakeShell()


@pytest.fixture
def environment_info() -> EnvironmentInfo:
    return EnvironmentInfo(
        pip=ToolAvailability(available=True, version="24.0", command="pip"),
        uv=ToolAvailability(available=True, version="0.4.0", command="uv"),
        detected=True,
    )


@pytest.fixture
def project_dir(tmp_path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def volume_controller(tmp_path, project_dir, host_environ):
    controller = VolumeController(
        "test-bottle",
        VolumeConfig(base_cache_dir=tmp_path / "volumes", project_dir=project_dir, skip_auto_detection=True),
        host_environ,
    )
    await controller.initialize()
    try:
        yield controller
    finally:
        await controller.cleanup()


@pytest_asyncio.fixture
async def shell(tmp_path, host_environ):
    """A real persistent shell rooted in a temp directory"""
    shell = Shell(ShellOptions(cwd=tmp_path), host_environ)
    await shell.initialize()
    try:
        yield shell
    finally:
        await shell.cleanup()


@pytest.fixture(autouse=True)
def reset_environment_cache():
    environment_detector.clear_cache()
    yield
    environment_detector.clear_cache()
