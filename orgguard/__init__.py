"""
orgguard: authorization-gated organization command layer.
"""

__version__ = "1.0.0"
