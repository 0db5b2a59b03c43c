"""Public API surface for HTTP serving."""

from kidstel_agent.api.app import create_app
from kidstel_agent.api.contracts import ErrorResponse, HealthResponse, StoryEnvelope

__all__ = [
    "ErrorResponse",
    "HealthResponse",
    "StoryEnvelope",
    "create_app",
]
