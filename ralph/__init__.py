"""
Ralph - Autonomous story loop for AI coding agents.

This package drives an external coding agent through a backlog of stories,
one story at a time, protecting the workspace with git checkpoints that are
committed on success and reverted on failure.
"""

__version__ = "0.1.0"
