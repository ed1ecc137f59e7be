class PerfBenchError(Exception):
    """Base class for harness failures. ``kind`` is what the CLI reports."""

    kind = "PerfBenchError"


class ControlPlaneUnavailable(PerfBenchError):
    kind = "ControlPlaneUnavailable"


class ProbeUnavailable(PerfBenchError):
    kind = "ProbeUnavailable"


class StoreWriteFailure(PerfBenchError):
    kind = "StoreWriteFailure"


class StoreReadFailure(PerfBenchError):
    kind = "StoreReadFailure"


class IncompatibleSchema(PerfBenchError):
    kind = "IncompatibleSchema"


class RecordNotFound(PerfBenchError):
    kind = "RecordNotFound"


class KubectlError(PerfBenchError):
    kind = "KubectlError"

    def __init__(
        self, args: list[str], message: str, returncode: int | None = None, timed_out: bool = False
    ) -> None:
        super().__init__(f"kubectl {' '.join(args)}: {message}")
        self.command = args
        self.returncode = returncode
        self.timed_out = timed_out


# Warning kind, not raised: a run stopped waiting before every workload finished.
TIMEOUT_PARTIAL_COMPLETION = "TimeoutPartialCompletion"
