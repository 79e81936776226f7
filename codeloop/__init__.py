"""codeloop - the agent loop core of an AI coding assistant."""

__version__ = "0.1.0"

from codeloop.agent import Agent, StopReason, TurnResult
from codeloop.config import Config

__all__ = ["Agent", "Config", "StopReason", "TurnResult", "__version__"]
