"""Execution session manager: tracks workflow runs and their runners."""
import asyncio

from .graph import GraphStore
from .runner import RunResult, WorkflowRunner

_MAX_SESSIONS = 20


class ExecutionSession:
    def __init__(self, execution_id: str, session_id: str, store: GraphStore, runner: WorkflowRunner):
        self.execution_id = execution_id
        self.session_id = session_id
        self.store = store
        self.runner = runner
        self.result: RunResult | None = None
        self.task: asyncio.Task | None = None
        self._unsubscribe = None

    @property
    def status(self) -> str:
        if self.runner.is_running:
            return "running"
        if self.result is None:
            return "pending"
        return self.result.status.value

    def watch(self, listener) -> None:
        self._unsubscribe = self.store.subscribe(listener)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


_sessions: dict[str, ExecutionSession] = {}


def create_session(
    execution_id: str, session_id: str, store: GraphStore, runner: WorkflowRunner,
) -> ExecutionSession:
    # evict the oldest finished sessions past the cap
    for old_id in list(_sessions):
        if len(_sessions) < _MAX_SESSIONS:
            break
        if not _sessions[old_id].runner.is_running:
            _sessions.pop(old_id).close()
    session = ExecutionSession(execution_id, session_id, store, runner)
    _sessions[execution_id] = session
    return session


def get_session(execution_id: str) -> ExecutionSession | None:
    return _sessions.get(execution_id)


def remove_session(execution_id: str) -> None:
    session = _sessions.pop(execution_id, None)
    if session is not None:
        session.close()
