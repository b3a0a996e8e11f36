"""Live handoff orchestration between an AI assistant and human support agents."""

__version__ = "1.0.0"
