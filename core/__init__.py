"""Core components"""
from .types import *
from .errors import (
    OrchestrationError, LLMError, SessionNotFoundError, VersionConflictError,
    InvalidTransitionError, ToolNotFoundError, ToolArgumentError, ToolDepthExceededError,
    RemoteToolError,
)
from .llm_client import LLMClient
from .context_manager import ContextManager
from .verifier import Verifier
from .deadline import Deadline
