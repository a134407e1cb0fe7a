"""Code-intelligence request orchestration and completion ranking."""

__version__ = "1.0.0"
