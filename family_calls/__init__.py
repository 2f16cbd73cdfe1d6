"""
Family call coordinator.

Two-party call lifecycle over a shared call record used as the only
signaling transport.
"""

__version__ = "1.0.0"
