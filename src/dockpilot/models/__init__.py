"""Data models for DockPilot."""
