"""
Core configuration, errors, and backend access.
"""
