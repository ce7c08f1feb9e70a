"""
Error taxonomy for the agent.

Lower layers raise these; the stage orchestrator in `avalanched.agent.runner`
decides retry vs. fatal. Every `FatalError` maps to a distinct exit status so
fleet tooling can tell failure categories apart without parsing logs.
"""

from __future__ import annotations

from typing import Optional


class AgentError(Exception):
    """Base for every error raised by the agent."""

    category = "error"


class TransientError(AgentError):
    """Retryable: store timeouts, key-service throttling, metadata hiccups."""

    category = "transient"


class ConfigurationError(AgentError):
    """Suspicious but survivable configuration (logged as WARNING)."""

    category = "configuration"


class CancelledError(AgentError):
    """A blocking wait was interrupted through its CancelToken."""

    category = "cancelled"


class FatalError(AgentError):
    exit_code = 1
    category = "fatal"

    def __init__(self, message: str, *, stage: Optional[str] = None, node_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.node_id = node_id

    def bind(self, *, stage: str, node_id: Optional[str]) -> "FatalError":
        # Keep whatever the raising layer already knew.
        if self.stage is None:
            self.stage = stage
        if self.node_id is None:
            self.node_id = node_id
        return self


class FatalConfigurationError(FatalError):
    exit_code = 2
    category = "configuration"


class CorruptionError(FatalError):
    exit_code = 3
    category = "corruption"


class ResourceUnavailableError(FatalError):
    exit_code = 4
    category = "resource-unavailable"


class SupervisionError(FatalError):
    exit_code = 5
    category = "supervision"


# Object store.


class StoreError(TransientError):
    pass


class ObjectNotFound(AgentError):
    def __init__(self, path: str) -> None:
        super().__init__(f"object not found: {path}")
        self.path = path


# Key management.


class KeyServiceUnavailable(TransientError):
    pass


class KeyEncryptError(TransientError):
    pass


class KeyDecryptError(CorruptionError):
    pass


class IdentityMismatchError(CorruptionError):
    pass


# Discovery / backups / metadata.


class MalformedRecordError(AgentError):
    pass


class RestoreError(CorruptionError):
    pass


class MetadataUnavailable(TransientError):
    pass


class VolumeCommandError(TransientError):
    pass
