"""
LockBlip Ghost
==============

Hidden, PIN-gated, self-destructing two-party chat backend.
"""

__version__ = "1.0.0"
