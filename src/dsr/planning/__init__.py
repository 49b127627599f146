"""Build planning: workflow analysis and per-target routing."""

from dsr.planning.platform_router import PlatformRouter
from dsr.planning.workflow_analyzer import WorkflowAnalysis, WorkflowAnalyzer

__all__ = ["PlatformRouter", "WorkflowAnalysis", "WorkflowAnalyzer"]
