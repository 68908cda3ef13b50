"""Exception types shared by the agent loop, tools and setup helpers."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, wrong value types, etc.)."""


class TransportError(AgentError):
    """The model stream or a subprocess could not be driven to completion.

    Propagates out of ``run_turn``; the transcript keeps every turn
    appended before the failure so the conversation can be resumed.
    """


class SpawnError(TransportError):
    """A shell command could not be started at all."""
