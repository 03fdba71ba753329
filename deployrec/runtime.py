from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock

from .models import DeploymentResult, utc_now


@dataclass
class RunStatus:
    id: str
    kind: str  # deploy|rollback
    target: str
    state: str  # running|succeeded|failed
    message: str
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    result: DeploymentResult | None = None


class RuntimeState:
    """In-memory run bookkeeping for the API.

    At most one run is in flight per process: runs mutate the project
    directory and container runtime in place.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.current: RunStatus | None = None
        self.runs: dict[str, RunStatus] = {}

    def try_begin(self, st: RunStatus) -> bool:
        with self.lock:
            if self.current is not None:
                return False
            self.current = st
            self.runs[st.id] = st
            return True

    def finish(self, run_id: str, result: DeploymentResult | None, message: str | None = None) -> None:
        with self.lock:
            st = self.runs.get(run_id)
            if st is None:
                return
            st.result = result
            st.state = "succeeded" if result is not None and result.succeeded else "failed"
            st.message = message or (result.error if result and result.error else "Deployment completed.")
            st.updated_at = utc_now()
            if self.current is st:
                self.current = None

    def get_run(self, run_id: str) -> RunStatus | None:
        with self.lock:
            return self.runs.get(run_id)

    def busy(self) -> bool:
        with self.lock:
            return self.current is not None

    def list_runs(self) -> list[RunStatus]:
        with self.lock:
            return list(self.runs.values())
