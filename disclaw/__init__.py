"""disclaw — Discord workspace structure and OpenClaw routing as code."""

__version__ = "0.4.0"
