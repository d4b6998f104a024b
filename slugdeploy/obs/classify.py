"""
Failure detection and classification system.
"""

import re
from typing import List, Dict, Optional, Any
from dataclasses import dataclass
from enum import Enum


class Severity(Enum):
    """Failure severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class FailureRule:
    """A rule for detecting specific failure patterns."""
    id: str
    name: str
    regexes: List[str]
    message: str
    hint: str
    severity: Severity


class FailureClassifier:
    """Classifies failures from tool output and provider errors using regex patterns."""

    def __init__(self):
        self.rules = self._load_default_rules()
        self.detected_failures: Dict[str, FailureRule] = {}

    def _load_default_rules(self) -> List[FailureRule]:
        """Load default failure detection rules."""
        return [
            # Build errors
            FailureRule(
                id="docker_daemon_unavailable",
                name="Docker Daemon Unavailable",
                regexes=[
                    r'cannot connect to the docker daemon',
                    r'is the docker daemon running',
                    r'docker: command not found',
                    r'no such file or directory: .?docker',
                ],
                message="Docker is not available on this machine",
                hint="Start Docker Desktop / dockerd and retry",
                severity=Severity.CRITICAL
            ),

            FailureRule(
                id="requirements_missing",
                name="Requirements File Missing",
                regexes=[
                    r'requirements\.txt.*not found',
                    r'could not open requirements file',
                    r'"/requirements\.txt": not found',
                ],
                message="requirements.txt is missing from the build context",
                hint="Add a requirements.txt listing streamlit and the app's dependencies",
                severity=Severity.HIGH
            ),

            FailureRule(
                id="pip_install_error",
                name="Python Dependencies Failed",
                regexes=[
                    r'ERROR: Could not find a version that satisfies',
                    r'ERROR: No matching distribution found',
                    r'pip install.*returned a non-zero code',
                ],
                message="Python dependencies failed to install",
                hint="Pin versions that publish wheels for linux/amd64",
                severity=Severity.HIGH
            ),

            FailureRule(
                id="exec_format_error",
                name="Wrong Image Architecture",
                regexes=[
                    r'exec format error',
                    r'image with reference .* was found but does not match the specified platform',
                ],
                message="Image architecture does not match the Fargate platform",
                hint="Build with --platform linux/amd64",
                severity=Severity.HIGH
            ),

            # Registry errors
            FailureRule(
                id="registry_auth",
                name="Registry Authentication Failed",
                regexes=[
                    r'no basic auth credentials',
                    r'denied: .*not authorized',
                    r'authorization token has expired',
                    r'ExpiredToken',
                    r'unauthorized: authentication required',
                ],
                message="Registry rejected the credentials",
                hint="Check the AWS profile and ECR permissions, then retry",
                severity=Severity.HIGH
            ),

            FailureRule(
                id="registry_repository_missing",
                name="Registry Repository Missing",
                regexes=[
                    r'name unknown: the repository with name .* does not exist',
                    r'RepositoryNotFoundException',
                ],
                message="ECR repository does not exist",
                hint="Create the repository or fix the 'repository' setting",
                severity=Severity.HIGH
            ),

            # Runtime errors surfaced by ECS
            FailureRule(
                id="cannot_pull_image",
                name="Image Pull Failed",
                regexes=[
                    r'CannotPullContainerError',
                    r'pull image manifest has been retried',
                ],
                message="ECS could not pull the container image",
                hint="Check the execution role's ECR permissions and the task's network egress",
                severity=Severity.HIGH
            ),

            FailureRule(
                id="secrets_unavailable",
                name="Secrets Unavailable",
                regexes=[
                    r'ResourceInitializationError: unable to pull secrets',
                    r'ParameterNotFound',
                    r'AccessDeniedException.*ssm',
                ],
                message="Task could not read its environment variables from SSM",
                hint="Create the SSM parameters and grant ssm:GetParameters to the execution role",
                severity=Severity.HIGH
            ),

            FailureRule(
                id="health_check_failed",
                name="Health Check Failed",
                regexes=[
                    r'Target\.FailedHealthChecks',
                    r'Target\.Timeout',
                    r'Target\.ResponseCodeMismatch',
                ],
                message="Targets are failing the load balancer health check",
                hint="Confirm the app serves /<slug>/_stcore/health (server.baseUrlPath must equal the slug)",
                severity=Severity.MEDIUM
            ),

            FailureRule(
                id="address_in_use",
                name="Port Already In Use",
                regexes=[
                    r'address already in use',
                    r'port .* is already in use',
                ],
                message="Port already in use",
                hint="Let the app listen on the configured container port only",
                severity=Severity.MEDIUM
            ),
        ]

    def classify_message(self, message: str, source: str = "unknown") -> Optional[FailureRule]:
        """Classify a log message and return the first matching failure rule."""
        for rule in self.rules:
            for regex_pattern in rule.regexes:
                try:
                    if re.search(regex_pattern, message, re.IGNORECASE):
                        return rule
                except re.error:
                    continue

        return None

    def classify_lines(self, lines: List[str], source: str = "unknown") -> Optional[FailureRule]:
        """Classify the most recent matching line, scanning from the end."""
        for line in reversed(lines):
            rule = self.classify_message(line, source)
            if rule:
                return rule
        return None

    def detect_failure(self, message: str, source: str = "unknown") -> Optional[Dict[str, Any]]:
        """Detect failure from a log message and return failure details."""
        rule = self.classify_message(message, source)

        if rule and rule.id not in self.detected_failures:
            self.detected_failures[rule.id] = rule

            return {
                "reason_code": rule.id,
                "name": rule.name,
                "message": rule.message,
                "hint": rule.hint,
                "severity": rule.severity.value,
                "source": source,
                "original_message": message
            }

        return None

    def get_detected_failures(self) -> Dict[str, FailureRule]:
        """Get all detected failures."""
        return self.detected_failures.copy()

    def clear_detected_failures(self):
        """Clear all detected failures."""
        self.detected_failures.clear()

    def get_rule_by_id(self, rule_id: str) -> Optional[FailureRule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None


def hint_for(lines: List[str], default: Optional[str] = None) -> Optional[str]:
    """Shortcut: hint of the first rule matching the given output, if any."""
    rule = FailureClassifier().classify_lines(lines)
    return rule.hint if rule else default
