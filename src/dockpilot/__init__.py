"""DockPilot: deployment orchestration with AI-assisted remediation.

DockPilot takes a config set of generated deployment files, builds and runs
it on a target platform, and when a build fails hands the failure to a
remediation advisor whose edits are applied before the next attempt.
"""

__version__ = "0.1.0"
