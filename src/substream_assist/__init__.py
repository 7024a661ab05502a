"""Substream Assist: recommendation and reversible-patch engine for subscriptions."""

__version__ = "0.1.0"
