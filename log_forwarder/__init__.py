"""Tail log files and forward new lines to an OTLP/HTTP collector."""

__version__ = "0.1.0"
