"""Orchestration core: key pool, provider gateway, agents, tasks, workflows and sessions."""
