"""AWS client management."""

import logging
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings

logger = logging.getLogger(__name__)

# Standard retry mode covers provider throttling on the shared ALB/CDN APIs
BOTO_CONFIG = Config(retries={"max_attempts": 8, "mode": "standard"}, connect_timeout=10, read_timeout=60)


class AWSClients:
    """
    Lazily created service clients for one pipeline.

    Each instance owns its own boto3 session; sessions are not thread-safe, so
    parallel pipelines must not share an instance.
    """

    def __init__(self, settings: Settings, session: Optional[boto3.session.Session] = None):
        self.settings = settings
        self.region = settings.region
        self._session = session
        self._clients: Dict[str, Any] = {}

    @property
    def session(self) -> boto3.session.Session:
        if self._session is None:
            self._session = boto3.session.Session(region_name=self.region)
        return self._session

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        if service_name in self._clients:
            return self._clients[service_name]

        # CloudFront is a global service served from us-east-1
        region = "us-east-1" if service_name == "cloudfront" else self.region
        client = self.session.client(service_name, region_name=region, config=BOTO_CONFIG)
        self._clients[service_name] = client
        logger.debug(f"Created {service_name} client ({region})")
        return client

    @property
    def ecr(self):
        return self.get_client("ecr")

    @property
    def ecs(self):
        return self.get_client("ecs")

    @property
    def elbv2(self):
        return self.get_client("elbv2")

    @property
    def cloudfront(self):
        return self.get_client("cloudfront")

    @property
    def logs(self):
        return self.get_client("logs")

    @property
    def ssm(self):
        return self.get_client("ssm")

    @property
    def tagging(self):
        return self.get_client("resourcegroupstaggingapi")


# Service errors plus the transport and credential failures raised before a response exists
AWS_ERRORS = (ClientError, BotoCoreError)


def error_code(error: Exception) -> str:
    if not isinstance(error, ClientError):
        return ""
    return error.response.get("Error", {}).get("Code", "")


def error_message(error: Exception) -> str:
    if not isinstance(error, ClientError):
        return f"{type(error).__name__}: {error}"
    err = error.response.get("Error", {})
    code = err.get("Code", "Unknown")
    message = err.get("Message", str(error))
    return f"{code}: {message}"
