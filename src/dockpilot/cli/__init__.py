"""DockPilot command-line interface."""
