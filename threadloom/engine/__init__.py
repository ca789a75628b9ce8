"""threadloom engine: supervised assistant CLI threads over local, SSH and WSL checkouts."""
from .models import (
    Activity,
    CommandStatus,
    ConnectionType,
    Message,
    MessageRole,
    PlanState,
    Project,
    ProjectCommand,
    Question,
    RepoLocation,
    SendOptions,
    Session,
    SshConfig,
    Thread,
    ThreadStatus,
    TokenUsage,
    WslConfig,
)
from .config import EngineConfig
from .errors import (
    AlreadyRunningError,
    ConfigError,
    EngineError,
    IncompleteAnswerError,
    InvalidStateError,
    NotFoundError,
    NotRunningError,
    ParseDesyncError,
    ProcessCrashError,
    ProcessError,
    ProcessSpawnError,
    QuestionPendingError,
    RemoteConnectionError,
    SessionImportError,
)

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "ThreadEngine",
    # Models
    "Activity",
    "CommandStatus",
    "ConnectionType",
    "Message",
    "MessageRole",
    "PlanState",
    "Project",
    "ProjectCommand",
    "Question",
    "RepoLocation",
    "SendOptions",
    "Session",
    "SshConfig",
    "Thread",
    "ThreadStatus",
    "TokenUsage",
    "WslConfig",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "LoomFileConfig",
    "load_yaml_config",
    # Providers (lazy import)
    "Provider",
    "ProviderRegistry",
    "ClaudeProvider",
    "CodexProvider",
    # Errors
    "AlreadyRunningError",
    "ConfigError",
    "EngineError",
    "IncompleteAnswerError",
    "InvalidStateError",
    "NotFoundError",
    "NotRunningError",
    "ParseDesyncError",
    "ProcessCrashError",
    "ProcessError",
    "ProcessSpawnError",
    "QuestionPendingError",
    "RemoteConnectionError",
    "SessionImportError",
]


def __getattr__(name: str):
    if name == "ThreadEngine":
        from .engine import ThreadEngine
        return ThreadEngine
    if name == "LoomFileConfig":
        from .yaml_config import LoomFileConfig
        return LoomFileConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "Provider":
        from .providers.base import Provider
        return Provider
    if name == "ProviderRegistry":
        from .providers.registry import ProviderRegistry
        return ProviderRegistry
    if name == "ClaudeProvider":
        from .providers.claude_provider import ClaudeProvider
        return ClaudeProvider
    if name == "CodexProvider":
        from .providers.codex_provider import CodexProvider
        return CodexProvider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
