"""
Typed records served by the commerce backend.
"""
