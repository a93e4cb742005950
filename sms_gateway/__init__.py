"""SMS gateway: topic-routed message distribution to polling devices."""

__version__ = "1.0.0"
