"""Ralph: drive developer/reviewer coding-agent turns against a persisted plan."""

__version__ = "0.4.0"
