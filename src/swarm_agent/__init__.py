"""Swarm agent: self-registering build node for a coordinator."""

__version__ = "0.1.0"
