"""
Self-update orchestrator for self-hosted services.

This package pulls new code, rebuilds the service container and keeps a way
back: every update run is checked, validated, snapshotted, applied in a fixed
participant order and unwound in reverse order when a step fails.
"""

__version__ = "0.1.0"
