"""
Mock utilities for testing the billing engine.
"""

from .backend import FakeBackend

__all__ = [
    "FakeBackend"
]
