from converge.state.backend import LocalStateBackend, LockInfo, MemoryStateBackend, StateBackend
from converge.state.recorder import StateRecorder

__all__ = [
    "LocalStateBackend",
    "LockInfo",
    "MemoryStateBackend",
    "StateBackend",
    "StateRecorder",
]
