"""Cocoa and chocolate contest: sample intake, sensory scoring and rankings."""

__version__ = "0.1.0"
