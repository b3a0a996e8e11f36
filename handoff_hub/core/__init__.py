"""Core handoff components: agent directory, transfer orchestration, real-time delivery."""
