"""
Process-local resource cache with tag lookup, TTL expiry and snapshot persistence.
"""

__version__ = "0.1.0"
