"""ReiStandard: scheduled, end-to-end encrypted push notifications."""

__version__ = "1.0.0"
