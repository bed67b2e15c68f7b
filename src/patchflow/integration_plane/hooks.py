"""Post-merge shell hooks run after an auto-accepted review lands."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HookResult:
    command: str
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class HookRunner:
    """Run configured commands through ``sh -c``, stopping at the first failure."""

    def __init__(self, *, cwd: Path | str | None = None, timeout: float | None = None) -> None:
        self.cwd = Path(cwd) if cwd is not None else None
        self.timeout = timeout

    def run(self, commands: Sequence[str]) -> list[HookResult]:
        results: list[HookResult] = []
        for command in commands:
            result = self._run_one(command)
            results.append(result)
            if not result.ok:
                logger.warning("post-merge hook failed (%d): %s", result.returncode, command)
                break
            logger.info("post-merge hook ok: %s", command)
        return results

    def _run_one(self, command: str) -> HookResult:
        try:
            completed = subprocess.run(
                ["sh", "-c", command],
                cwd=self.cwd,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            output = exc.output if isinstance(exc.output, str) else ""
            return HookResult(command=command, returncode=-1, output=output + "\n[timed out]")
        except OSError as exc:
            return HookResult(command=command, returncode=-1, output=str(exc))
        return HookResult(command=command, returncode=completed.returncode, output=completed.stdout)


def hooks_succeeded(results: Sequence[HookResult]) -> bool:
    return bool(results) and all(result.ok for result in results)


__all__ = ["HookResult", "HookRunner", "hooks_succeeded"]
