"""
Observability module for slugdeploy pipelines.

Provides failure classification, status derivation and console links.
"""

from .classify import FailureClassifier, FailureRule, Severity, hint_for
from .status import StatusDeriver, DeploymentStatus, StatusInfo
from .cw_links import ConsoleLinkBuilder

__all__ = [
    "FailureClassifier",
    "FailureRule",
    "Severity",
    "hint_for",
    "StatusDeriver",
    "DeploymentStatus",
    "StatusInfo",
    "ConsoleLinkBuilder",
]
