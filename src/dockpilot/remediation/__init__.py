"""Remediation advisors that propose artifact edits for failed builds."""

from dockpilot.remediation.advisor import ActivityReporter, BaseAdvisor, DisabledAdvisor

__all__ = ["ActivityReporter", "BaseAdvisor", "DisabledAdvisor"]
