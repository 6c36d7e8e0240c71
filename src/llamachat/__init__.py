from llamachat.backend import BackendClient
from llamachat.config import ClientConfig, SamplingParams
from llamachat.errors import (
    BackendError,
    CancellationError,
    ConfigError,
    LlamaChatError,
    PersistenceError,
    StreamError,
    ToolExecutionError,
)
from llamachat.logs import JsonFormatter, setup_logging
from llamachat.orchestrator import OrchestratorState, ToolOrchestrator
from llamachat.persistence import LocalBackupStore, PersistenceReconciler
from llamachat.session import ChatSession
from llamachat.tools import ToolRegistry

__version__ = "0.1.0"

__all__ = [
    "BackendClient",
    "ClientConfig",
    "SamplingParams",
    "BackendError",
    "CancellationError",
    "ConfigError",
    "LlamaChatError",
    "PersistenceError",
    "StreamError",
    "ToolExecutionError",
    "OrchestratorState",
    "ToolOrchestrator",
    "LocalBackupStore",
    "PersistenceReconciler",
    "ChatSession",
    "ToolRegistry",
    "JsonFormatter",
    "setup_logging",
]
