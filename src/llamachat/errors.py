class LlamaChatError(Exception):
    pass


class ConfigError(LlamaChatError):
    pass


class BackendError(LlamaChatError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StreamError(LlamaChatError):
    pass


class ToolExecutionError(LlamaChatError):
    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class CancellationError(LlamaChatError):
    pass


class PersistenceError(LlamaChatError):
    pass
