"""Agent directory: roster, availability, capacity and candidate ranking."""

from handoff_hub.core.directory.agent_directory import AgentDirectory, StatusListener

__all__ = ["AgentDirectory", "StatusListener"]
