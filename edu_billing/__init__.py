"""
Subscription and purchase lifecycle engine for the education commerce platform.
"""

__version__ = "1.0.0"
