"""Stream Speculator: live channel tracking and prediction lifecycle engine."""

__version__ = "0.1.0"
