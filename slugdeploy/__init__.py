"""
slugdeploy - Automated deployment orchestrator for slug-routed container apps.

This package provides a CLI and REST API that build a project's image, reconcile
its ECS service, ALB rule and CloudFront behavior, and verify it end to end.
"""

__version__ = "0.1.0"
__author__ = "slugdeploy"
