"""EC2-backed integration test harness for knife-solo."""

__version__ = "0.1.0"
