"""
Exception taxonomy for declaration, graph, provider and state failures.
"""
from typing import List, Optional


class ConvergeError(Exception):
    """Base class for every error converge raises on purpose."""

    def __init__(self, message: str, node: Optional[str] = None):
        super().__init__(message)
        self.node = node

    def __str__(self) -> str:
        msg = super().__str__()
        if self.node and not msg.startswith(f"{self.node}:"):
            return f"{self.node}: {msg}"
        return msg


# ------------------------------------------------------------------ pre-apply

class DeclarationError(ConvergeError):
    """Declaration file unreadable, duplicate logical name or unknown type."""


class UnresolvedReferenceError(ConvergeError):
    """An expression names a missing node or a missing attribute."""


class CycleError(ConvergeError):
    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__("reference cycle: " + " -> ".join(cycle + cycle[:1]))


class PolicyViolationError(ConvergeError):
    """The declaration grants privileges outside the configured policy."""


# ------------------------------------------------------------------ per node

class ProtectedResourceError(ConvergeError):
    """A destroy (or replace) was planned for a node flagged protect_from_destroy."""


class ProviderError(ConvergeError):
    pass


class ProviderTransientError(ProviderError):
    """Retryable: throttling, timeouts, eventual-consistency misses."""


class ProviderPermanentError(ProviderError):
    """Not retryable: validation failures, access denied, conflicts."""


# ------------------------------------------------------------------ state

class LockContentionError(ConvergeError):
    def __init__(self, message: str, holder: Optional[str] = None, lock_id: Optional[str] = None):
        super().__init__(message)
        self.holder = holder
        self.lock_id = lock_id


class StateCorruptionError(ConvergeError):
    """Recorded state cannot be read back; needs an operator."""
