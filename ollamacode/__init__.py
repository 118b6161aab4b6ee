from .report import AgentError, ConfigError, UpstreamError
from .session import Result, Session

__all__ = ["AgentError", "ConfigError", "Result", "Session", "UpstreamError"]
