"""Slackbot proxy relation permissions."""

__version__ = "0.3.0"
