"""File-backed persistence for plans, turn sessions and notes."""

from .container import Container

__all__ = ["Container"]
