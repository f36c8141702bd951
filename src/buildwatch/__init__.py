"""Incremental build orchestrator for native targets and a bundled web app."""

__version__ = "0.1.0"
