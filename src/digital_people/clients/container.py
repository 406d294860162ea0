from __future__ import annotations

import shlex
import subprocess
from pathlib import Path

from digital_people.utils.files import ensure_dir


class ContainerError(RuntimeError):
    pass


def _tail(s: str, n: int = 1000) -> str:
    s = str(s or "").strip()
    return s if len(s) <= n else s[-n:]


class ContainerOps:
    """
    Out-of-band file access inside the synthesis service's container.

    Only used when the shared mount does not show the artifact.
    """

    def __init__(self, container: str, *, docker_bin: str = "docker", timeout_s: int = 30) -> None:
        self.container = str(container)
        self.docker_bin = str(docker_bin)
        self.timeout_s = int(timeout_s)

    def _run(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            p = subprocess.run(argv, capture_output=True, text=True, timeout=self.timeout_s)
        except subprocess.TimeoutExpired as ex:
            raise ContainerError(f"{argv[1]} timed out after {self.timeout_s}s") from ex
        except OSError as ex:
            raise ContainerError(f"{argv[0]} unavailable: {ex}") from ex
        if p.returncode != 0:
            raise ContainerError(f"{' '.join(argv[:3])} failed (exit={p.returncode}) | {_tail(p.stderr)}")
        return p

    def _exec(self, script: str) -> str:
        p = self._run([self.docker_bin, "exec", "-i", self.container, "bash", "-lc", script])
        # some docker versions print to stderr
        return f"{p.stdout or ''}\n{p.stderr or ''}"

    def exists(self, inside: str) -> bool:
        q = shlex.quote(inside)
        out = self._exec(f"if [ -f {q} ]; then echo FOUND; else echo MISSING; fi")
        return "FOUND" in out

    def size(self, inside: str) -> int | None:
        q = shlex.quote(inside)
        out = self._exec(f"stat -c %s {q} 2>/dev/null || echo MISSING")
        for line in out.splitlines():
            line = line.strip()
            if line.isdigit():
                return int(line)
        return None

    def copy_out(self, inside: str, host_path: Path) -> None:
        ensure_dir(Path(host_path).parent)
        self._run([self.docker_bin, "cp", f"{self.container}:{inside}", str(host_path)])

    def remove(self, inside: str) -> None:
        self._exec(f"rm -f {shlex.quote(inside)}")
