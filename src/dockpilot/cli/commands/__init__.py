"""DockPilot CLI commands."""
