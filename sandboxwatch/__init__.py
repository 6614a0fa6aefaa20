"""sandboxwatch: process supervisor with runtime error detection and log storage."""

__version__ = "0.1.0"
