"""
Gateway-facing API and billing services.
"""
