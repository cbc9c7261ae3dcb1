"""Subprocess helpers: one entry point, direct or elevated front-ends."""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Union

import structlog

from .errors import ToolInvocationFailed, ToolNotFound

logger = structlog.get_logger(__name__)


@dataclass
class ProcessResult:
    command: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    command: Sequence[str],
    *,
    check: bool = False,
    timeout: Optional[float] = None,
    env: Optional[dict] = None,
    input_data: Optional[str] = None,
    cwd: Optional[Union[str, Path]] = None,
) -> ProcessResult:
    """Run ``command`` and capture its output.

    A missing executable raises :class:`ToolNotFound`; a timeout, or a
    non-zero exit when ``check`` is set, raises :class:`ToolInvocationFailed`.
    """
    argv = [str(part) for part in command]
    start = time.monotonic()
    try:
        completed = subprocess.run(
            argv,
            check=False,
            timeout=timeout,
            text=True,
            capture_output=True,
            env=env,
            input=input_data,
            cwd=str(cwd) if isinstance(cwd, Path) else cwd,
        )
    except FileNotFoundError as exc:
        raise ToolNotFound([argv[0]]) from exc
    except subprocess.TimeoutExpired as exc:
        raise ToolInvocationFailed(
            ProcessResult(
                argv,
                -1,
                exc.output if isinstance(exc.output, str) else "",
                exc.stderr if isinstance(exc.stderr, str) else "",
                time.monotonic() - start,
            ),
            message=f"Command timed out after {timeout}s",
        ) from exc

    result = ProcessResult(
        argv, completed.returncode, completed.stdout or "", completed.stderr or "", time.monotonic() - start
    )
    logger.debug("Command finished", command=argv, returncode=result.returncode, duration=round(result.duration, 3))

    if check and completed.returncode != 0:
        raise ToolInvocationFailed(result)

    return result


Runner = Callable[..., ProcessResult]


class Invoker:
    """Front-end over a runner; elevated invokers prefix every argv."""

    def __init__(self, runner: Runner = run_command, prefix: Sequence[str] = ()):
        self._runner = runner
        self.prefix = tuple(prefix)

    @property
    def elevated(self) -> bool:
        return bool(self.prefix)

    def run(self, argv: Sequence[str], **kwargs) -> ProcessResult:
        return self._runner([*self.prefix, *[str(part) for part in argv]], **kwargs)


def needs_privilege(path: Union[str, Path], protected_prefixes: Iterable[Union[str, Path]]) -> bool:
    """True when ``path`` lives under one of the system-owned prefixes."""
    candidate = Path(path)
    for prefix in protected_prefixes:
        prefix_path = Path(prefix)
        if candidate == prefix_path or prefix_path in candidate.parents:
            return True
    return False
