import json
import subprocess
from typing import Any, Optional

import structlog

from perfbench.errors import KubectlError

logger = structlog.get_logger(__name__)


class Kubectl:
    """Runs kubectl against an explicit context and decodes its output."""

    def __init__(self, context: Optional[str] = None, timeout_seconds: int = 60) -> None:
        self._context = context
        self._timeout = timeout_seconds

    def _command(self, args: tuple[str, ...]) -> list[str]:
        cmd = ["kubectl"]
        if self._context:
            cmd += ["--context", self._context]
        return cmd + list(args)

    def run(self, *args: str, input: Optional[str] = None, timeout: Optional[float] = None) -> str:
        """Run a kubectl command and return stdout, raising KubectlError on failure.

        ``timeout`` overrides the client-wide limit for one slow call.
        """
        cmd = self._command(args)
        timeout = timeout or self._timeout
        try:
            result = subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise KubectlError(list(args), "kubectl binary not found") from e
        except subprocess.TimeoutExpired as e:
            raise KubectlError(list(args), f"timed out after {timeout}s", timed_out=True) from e

        if result.returncode != 0:
            logger.debug("kubectl failed", args=list(args), returncode=result.returncode)
            raise KubectlError(list(args), result.stderr.strip(), result.returncode)
        return result.stdout

    def get_json(self, *args: str) -> Any:
        out = self.run(*args, "-o", "json")
        try:
            return json.loads(out)
        except json.JSONDecodeError as e:
            raise KubectlError(list(args), f"invalid JSON output: {e}") from e
