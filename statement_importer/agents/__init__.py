"""Agents package: provides the base class and the vision agent for photographed statements."""

from .base import AgentExtraction, BaseAgent  # noqa: F401
from .vision_agent import StatementVisionAgent  # noqa: F401
