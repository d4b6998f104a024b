"""
CloudWatch and AWS console link builders.
"""

import urllib.parse
from typing import Dict, Optional


class ConsoleLinkBuilder:
    """Builds AWS console URLs for a project's logs and resources."""

    def __init__(self, region: str):
        self.region = region

    def build_log_group_url(self, log_group: str) -> str:
        """Build CloudWatch log group console URL."""
        encoded_group = urllib.parse.quote(log_group, safe='')
        return f"https://console.aws.amazon.com/cloudwatch/home?region={self.region}#logsV2:log-groups/log-group/{encoded_group}"

    def build_ecs_service_url(self, cluster_name: str, service_name: str) -> str:
        """Build ECS service console URL."""
        return f"https://console.aws.amazon.com/ecs/v2/clusters/{cluster_name}/services/{service_name}/health?region={self.region}"

    def build_target_group_url(self, target_group_arn: str) -> str:
        encoded_arn = urllib.parse.quote(target_group_arn, safe='')
        return f"https://console.aws.amazon.com/ec2/home?region={self.region}#TargetGroup:targetGroupArn={encoded_arn}"

    def build_cloudfront_console_url(self, distribution_id: str) -> str:
        """Build CloudFront distribution console URL."""
        return f"https://console.aws.amazon.com/cloudfront/v4/home#/distributions/{distribution_id}/behaviors"

    def build_links(self, cluster_name: str, state: Dict[str, Optional[str]],
                    distribution_id: Optional[str] = None) -> Dict[str, str]:
        """Build console links for whatever a deployment record already holds."""
        links = {}

        if state.get("log_group"):
            links["logs"] = self.build_log_group_url(state["log_group"])
        if state.get("service_name"):
            links["service"] = self.build_ecs_service_url(cluster_name, state["service_name"])
        if state.get("target_group_arn"):
            links["target_group"] = self.build_target_group_url(state["target_group_arn"])
        if state.get("behavior_id") and distribution_id:
            links["cdn"] = self.build_cloudfront_console_url(distribution_id)

        return links
