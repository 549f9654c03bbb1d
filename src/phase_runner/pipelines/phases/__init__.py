"""Built-in phase implementations."""

from .analysis import AnalysisPhase
from .development import DevelopmentPhase
from .judge import JudgePhase
from .merge import MergePhase, build_pr_body, trigger_merge

__all__ = [
    "AnalysisPhase",
    "DevelopmentPhase",
    "JudgePhase",
    "MergePhase",
    "build_pr_body",
    "trigger_merge",
]
