"""stickguard: device event processing and alerting backend for smart-stick field devices."""

__version__ = "0.1.0"
