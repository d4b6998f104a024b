"""
Routing reconciler: ALB listener rule and CloudFront behavior for a slug.

The listener's priority space and the distribution's path patterns are shared
by every project. Each check-then-act below runs inside a process-wide
critical section per listener/distribution, and retries on the provider's
own optimistic-concurrency errors to cover writers in other processes.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .aws import AWS_ERRORS, AWSClients, error_code, error_message
from .config import Settings
from .errors import RoutingConflict, RoutingFailure
from .spec import ProjectSpec, resource_names
from .tags import aws_tags, base_tags

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "HEAD", "OPTIONS", "PUT", "PATCH", "POST", "DELETE"]
CACHED_METHODS = ["GET", "HEAD"]
WILDCARDS = "*?"

_locks: Dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


def shared_lock(key: str) -> threading.Lock:
    """One lock per shared resource (listener ARN or distribution id)."""
    with _locks_guard:
        if key not in _locks:
            _locks[key] = threading.Lock()
        return _locks[key]


def literal_prefix(pattern: str) -> str:
    for i, ch in enumerate(pattern):
        if ch in WILDCARDS:
            return pattern[:i]
    return pattern


def patterns_overlap(a: str, b: str) -> bool:
    """
    True if some request path could match both patterns.

    Patterns are compared by their literal prefix up to the first wildcard,
    which is exact for the /<slug>* shape and conservative otherwise.
    """
    if a == b:
        return True
    a_wild = any(ch in WILDCARDS for ch in a)
    b_wild = any(ch in WILDCARDS for ch in b)
    pa, pb = literal_prefix(a), literal_prefix(b)
    if a_wild and b_wild:
        return pa.startswith(pb) or pb.startswith(pa)
    if a_wild:
        return b.startswith(pa)
    if b_wild:
        return a.startswith(pb)
    return False


def slug_from_pattern(pattern: str) -> str:
    return literal_prefix(pattern).strip("/") or pattern


def target_group_name_from_arn(arn: str) -> str:
    # arn:aws:elasticloadbalancing:<region>:<acct>:targetgroup/<name>/<id>
    parts = arn.split("/")
    return parts[1] if len(parts) >= 3 else arn


@dataclass
class RoutingResult:
    rule_arn: Optional[str] = None
    rule_priority: Optional[int] = None
    behavior_id: Optional[str] = None
    mutations: List[str] = field(default_factory=list)


def _rule_patterns(rule: Dict[str, Any]) -> List[str]:
    patterns: List[str] = []
    for condition in rule.get("Conditions", []):
        if condition.get("Field") != "path-pattern":
            continue
        patterns.extend(condition.get("PathPatternConfig", {}).get("Values", []))
        patterns.extend(v for v in condition.get("Values", []) if v not in patterns)
    return patterns


def _rule_targets(rule: Dict[str, Any]) -> List[str]:
    targets: List[str] = []
    for action in rule.get("Actions", []):
        if action.get("Type") != "forward":
            continue
        if action.get("TargetGroupArn"):
            targets.append(action["TargetGroupArn"])
        for tg in action.get("ForwardConfig", {}).get("TargetGroups", []):
            if tg.get("TargetGroupArn") not in targets:
                targets.append(tg["TargetGroupArn"])
    return targets


def behavior_id(distribution_id: str, pattern: str) -> str:
    return f"{distribution_id}:{pattern}"


class RoutingReconciler:
    """Ensures (or removes) one slug's listener rule and CDN behavior."""

    def __init__(self, spec: ProjectSpec, settings: Settings, clients: AWSClients,
                 extra_tags: Optional[Dict[str, str]] = None):
        self.spec = spec
        self.settings = settings
        self.clients = clients
        self.pattern = spec.path_pattern
        self.tags = base_tags(spec.slug, extra_tags)
        self.result = RoutingResult()

    def _mutated(self, call: str) -> None:
        self.result.mutations.append(call)
        logger.info(f"[{self.spec.slug}] {call}")

    # Listener rules

    def list_rules(self) -> List[Dict[str, Any]]:
        rules: List[Dict[str, Any]] = []
        kwargs = {"ListenerArn": self.settings.listener_arn}
        while True:
            response = self.clients.elbv2.describe_rules(**kwargs)
            rules.extend(response.get("Rules", []))
            marker = response.get("NextMarker")
            if not marker:
                return rules
            kwargs["Marker"] = marker

    def find_rule(self, rules: List[Dict[str, Any]], target_group_arn: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Return our rule if it already exists; raise RoutingConflict if another
        target group claims an overlapping pattern.
        """
        ours = None
        for rule in rules:
            if rule.get("IsDefault"):
                continue
            targets = _rule_targets(rule)
            for existing in _rule_patterns(rule):
                if not patterns_overlap(self.pattern, existing):
                    continue
                if target_group_arn and targets == [target_group_arn]:
                    if existing == self.pattern:
                        ours = rule
                    continue
                owner = ", ".join(target_group_name_from_arn(t) for t in targets) or "a non-forward action"
                raise RoutingConflict(self.pattern, existing, owner, where="load balancer rule")
        return ours

    def lowest_free_priority(self, rules: List[Dict[str, Any]]) -> int:
        taken = {int(r["Priority"]) for r in rules if str(r.get("Priority", "")).isdigit()}
        priority = self.settings.rule_priority_start
        while priority in taken:
            priority += 1
        return priority

    def ensure_rule(self, target_group_arn: str) -> Tuple[str, int]:
        with shared_lock(self.settings.listener_arn):
            for attempt in range(1, self.settings.routing_attempts + 1):
                try:
                    rules = self.list_rules()
                    existing = self.find_rule(rules, target_group_arn)
                    if existing:
                        logger.debug(f"[{self.spec.slug}] rule {existing['RuleArn']} already routes {self.pattern}")
                        return existing["RuleArn"], int(existing["Priority"])

                    priority = self.lowest_free_priority(rules)
                    response = self.clients.elbv2.create_rule(
                        ListenerArn=self.settings.listener_arn,
                        Priority=priority,
                        Conditions=[{
                            "Field": "path-pattern",
                            "PathPatternConfig": {"Values": [self.pattern]},
                        }],
                        Actions=[{"Type": "forward", "TargetGroupArn": target_group_arn}],
                        Tags=aws_tags(self.tags),
                    )
                    self._mutated("elbv2:CreateRule")
                    rule = response["Rules"][0]
                    return rule["RuleArn"], int(rule["Priority"])
                except AWS_ERRORS as e:
                    if error_code(e) == "PriorityInUse":
                        logger.info(f"[{self.spec.slug}] priority taken concurrently, retrying ({attempt})")
                        continue
                    raise RoutingFailure(f"Listener rule for {self.pattern}: {error_message(e)}") from e

        raise RoutingFailure(
            f"Could not reserve a listener priority after {self.settings.routing_attempts} attempts",
            hint="Another writer keeps taking the same priority; retry the deploy",
        )

    def remove_rule(self, target_group_arn: Optional[str]) -> Optional[str]:
        """
        Delete the slug's listener rule.

        A rule on the slug's path is only ours if it forwards to our target
        group: the given ARN, or without one, the slug's derived target group
        name. Anything else on the same path is left in place.
        """
        own_name = resource_names(self.spec, self.settings).target_group
        with shared_lock(self.settings.listener_arn):
            try:
                rules = self.list_rules()
            except AWS_ERRORS as e:
                raise RoutingFailure(f"Listing listener rules: {error_message(e)}") from e
            for rule in rules:
                if rule.get("IsDefault") or self.pattern not in _rule_patterns(rule):
                    continue
                targets = _rule_targets(rule)
                if target_group_arn:
                    ours = targets == [target_group_arn]
                else:
                    ours = bool(targets) and all(target_group_name_from_arn(t) == own_name for t in targets)
                if not ours:
                    logger.warning(f"[{self.spec.slug}] rule {rule['RuleArn']} forwards elsewhere; leaving it")
                    continue
                try:
                    self.clients.elbv2.delete_rule(RuleArn=rule["RuleArn"])
                except AWS_ERRORS as e:
                    if error_code(e) == "RuleNotFound":
                        return None
                    raise RoutingFailure(f"Deleting rule: {error_message(e)}") from e
                self._mutated("elbv2:DeleteRule")
                return rule["RuleArn"]
        return None

    # CDN behaviors

    def desired_behavior(self) -> Dict[str, Any]:
        s = self.settings
        return {
            "PathPattern": self.pattern,
            "TargetOriginId": s.cdn_origin_id,
            "TrustedSigners": {"Enabled": False, "Quantity": 0},
            "TrustedKeyGroups": {"Enabled": False, "Quantity": 0},
            "ViewerProtocolPolicy": s.viewer_protocol_policy,
            "AllowedMethods": {
                "Quantity": len(ALL_METHODS),
                "Items": list(ALL_METHODS),
                "CachedMethods": {"Quantity": len(CACHED_METHODS), "Items": list(CACHED_METHODS)},
            },
            "SmoothStreaming": False,
            "Compress": False,
            "LambdaFunctionAssociations": {"Quantity": 0},
            "FunctionAssociations": {"Quantity": 0},
            "FieldLevelEncryptionId": "",
            "CachePolicyId": s.cache_policy_id,
            "OriginRequestPolicyId": s.origin_request_policy_id,
        }

    def _behavior_drift(self, behavior: Dict[str, Any]) -> List[str]:
        """Mandatory settings that an existing behavior of ours lacks."""
        drift = []
        if behavior.get("CachePolicyId") != self.settings.cache_policy_id:
            drift.append("CachePolicyId")
        if behavior.get("Compress"):
            drift.append("Compress")
        if sorted(behavior.get("AllowedMethods", {}).get("Items", [])) != sorted(ALL_METHODS):
            drift.append("AllowedMethods")
        return drift

    def _scan_behaviors(self, behaviors: List[Dict[str, Any]]) -> Optional[int]:
        """Index of our behavior, or None; RoutingConflict on overlap with another."""
        ours = None
        for index, behavior in enumerate(behaviors):
            existing = behavior.get("PathPattern", "")
            if not patterns_overlap(self.pattern, existing):
                continue
            if existing == self.pattern and behavior.get("TargetOriginId") == self.settings.cdn_origin_id:
                ours = index
                continue
            owner = slug_from_pattern(existing)
            if existing == self.pattern:
                owner = f"origin {behavior.get('TargetOriginId')}"
            raise RoutingConflict(self.pattern, existing, owner, where="CDN behavior")
        return ours

    def _update_distribution(self, config: Dict[str, Any], etag: str) -> None:
        self.clients.cloudfront.update_distribution(
            Id=self.settings.distribution_id, IfMatch=etag, DistributionConfig=config,
        )

    def ensure_behavior(self) -> str:
        distribution_id = self.settings.distribution_id
        bid = behavior_id(distribution_id, self.pattern)
        cloudfront = self.clients.cloudfront

        with shared_lock(distribution_id):
            for attempt in range(1, self.settings.routing_attempts + 1):
                try:
                    response = cloudfront.get_distribution_config(Id=distribution_id)
                    etag = response["ETag"]
                    config = copy.deepcopy(response["DistributionConfig"])
                    behaviors = config.setdefault("CacheBehaviors", {"Quantity": 0}).get("Items", [])

                    index = self._scan_behaviors(behaviors)
                    if index is not None:
                        drift = self._behavior_drift(behaviors[index])
                        if not drift:
                            return bid
                        logger.info(f"[{self.spec.slug}] repairing CDN behavior drift on {drift}")
                        behaviors[index] = self.desired_behavior()
                    else:
                        origins = [o["Id"] for o in config.get("Origins", {}).get("Items", [])]
                        if self.settings.cdn_origin_id not in origins:
                            raise RoutingFailure(
                                f"Origin {self.settings.cdn_origin_id} not found on distribution {distribution_id}",
                                hint="Set cdn_origin_id to the load balancer origin's id",
                            )
                        behaviors.append(self.desired_behavior())

                    config["CacheBehaviors"] = {"Quantity": len(behaviors), "Items": behaviors}
                    self._update_distribution(config, etag)
                    self._mutated("cloudfront:UpdateDistribution")
                    return bid
                except AWS_ERRORS as e:
                    if error_code(e) == "PreconditionFailed":
                        logger.info(f"[{self.spec.slug}] distribution changed concurrently, retrying ({attempt})")
                        continue
                    raise RoutingFailure(f"CDN behavior for {self.pattern}: {error_message(e)}") from e

        raise RoutingFailure(
            f"Distribution {distribution_id} kept changing; gave up after {self.settings.routing_attempts} attempts",
        )

    def remove_behavior(self) -> Optional[str]:
        distribution_id = self.settings.distribution_id
        with shared_lock(distribution_id):
            for attempt in range(1, self.settings.routing_attempts + 1):
                try:
                    response = self.clients.cloudfront.get_distribution_config(Id=distribution_id)
                    config = copy.deepcopy(response["DistributionConfig"])
                    behaviors = config.get("CacheBehaviors", {}).get("Items", [])
                    keep = [b for b in behaviors if not (
                        b.get("PathPattern") == self.pattern
                        and b.get("TargetOriginId") == self.settings.cdn_origin_id)]
                    if len(keep) == len(behaviors):
                        return None
                    config["CacheBehaviors"] = {"Quantity": len(keep)}
                    if keep:
                        config["CacheBehaviors"]["Items"] = keep
                    self._update_distribution(config, response["ETag"])
                    self._mutated("cloudfront:UpdateDistribution")
                    return behavior_id(distribution_id, self.pattern)
                except AWS_ERRORS as e:
                    if error_code(e) == "PreconditionFailed":
                        continue
                    raise RoutingFailure(f"Removing CDN behavior: {error_message(e)}") from e
        raise RoutingFailure(f"Distribution {distribution_id} kept changing while removing {self.pattern}")

    def check_conflicts(self, target_group_arn: str) -> None:
        """Raise RoutingConflict for an overlap on either side before anything is changed."""
        try:
            self.find_rule(self.list_rules(), target_group_arn)
            response = self.clients.cloudfront.get_distribution_config(Id=self.settings.distribution_id)
        except AWS_ERRORS as e:
            raise RoutingFailure(f"Reading routing state: {error_message(e)}") from e
        self._scan_behaviors(response["DistributionConfig"].get("CacheBehaviors", {}).get("Items", []))

    def reconcile(self, target_group_arn: str) -> RoutingResult:
        self.check_conflicts(target_group_arn)
        rule_arn, priority = self.ensure_rule(target_group_arn)
        self.result.rule_arn = rule_arn
        self.result.rule_priority = priority
        self.result.behavior_id = self.ensure_behavior()
        return self.result


def reconcile_routing(spec: ProjectSpec, target_group_arn: str, settings: Settings, clients: AWSClients,
                      extra_tags: Optional[Dict[str, str]] = None) -> RoutingResult:
    """
    Ensure the /<slug>* listener rule and CDN behavior exist.

    Raises:
        RoutingConflict: Another project claims an overlapping path
        RoutingFailure: Provider error or persistent concurrent modification
    """
    if not target_group_arn:
        raise RoutingFailure("Routing requires a target group from compute reconciliation")
    return RoutingReconciler(spec, settings, clients, extra_tags).reconcile(target_group_arn)
