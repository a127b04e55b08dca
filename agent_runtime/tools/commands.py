from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True, slots=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int


class CommandRunner(Protocol):
    def run_command(self, command: str, cwd: Path) -> CommandResult: ...


class LocalCommandRunner:
    """Runs shell commands to completion.

    ``timeout_seconds`` is optional; without it a command runs as long as it takes.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = timeout_seconds

    def run_command(self, command: str, cwd: Path) -> CommandResult:
        try:
            proc = subprocess.run(
                command,
                cwd=cwd,
                shell=True,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            partial = exc.stdout.decode("utf-8", "replace") if isinstance(exc.stdout, bytes) else (exc.stdout or "")
            return CommandResult(
                stdout=partial,
                stderr=f"Command timed out after {self.timeout_seconds:g} seconds.",
                exit_code=124,
            )
        return CommandResult(stdout=proc.stdout, stderr=proc.stderr, exit_code=proc.returncode)
