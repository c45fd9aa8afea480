"""Streaming conversation engine with cancellable upstream requests and branching message versions."""

__version__ = "0.1.0"
