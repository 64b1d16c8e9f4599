"""agentdesk - agent routing and orchestration core."""

__version__ = "0.1.0"
