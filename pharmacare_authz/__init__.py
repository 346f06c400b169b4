"""
PharmaCare authorization core.

Static permission-matrix evaluation, role-assignment evaluation, and the
compatibility router that phases the second model in behind feature flags.
"""
__version__ = "1.0.0"
