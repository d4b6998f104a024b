"""
Shared fixtures: settings pointing at the fakes, a demo project on disk, and
a verifier that never sleeps for real.
"""

from unittest.mock import patch

import pytest

from slugdeploy.config import Settings
from slugdeploy.spec import load_spec
from slugdeploy.verify import HealthVerifier

from fakes import (
    ACCOUNT, DISTRIBUTION_ID, LISTENER_ARN, ORIGIN_ID, REGION,
    FakeClients, FakeClock, FakeHTTPSession,
)

DEMO_APP = """\
import streamlit as st

st.title("Demo App")
"""


@pytest.fixture
def settings(tmp_path):
    return Settings(
        region=REGION,
        home=str(tmp_path / "home"),
        registry=f"{ACCOUNT}.dkr.ecr.{REGION}.amazonaws.com",
        vpc_id="vpc-0abc",
        subnet_ids=["subnet-a", "subnet-b"],
        security_group_ids=["sg-0123"],
        execution_role_arn=f"arn:aws:iam::{ACCOUNT}:role/ecsTaskExecutionRole",
        listener_arn=LISTENER_ARN,
        alb_dns_name="shared-alb-123.us-east-1.elb.amazonaws.com",
        distribution_id=DISTRIBUTION_ID,
        cdn_domain="d111111abcdef8.cloudfront.net",
        cdn_origin_id=ORIGIN_ID,
        probe_retry_delay=1.0,
    )


@pytest.fixture
def clients():
    return FakeClients()


@pytest.fixture
def project_dir(tmp_path):
    """A minimal Streamlit project called demo-app."""
    path = tmp_path / "demo-app"
    path.mkdir()
    (path / "app.py").write_text(DEMO_APP)
    (path / "requirements.txt").write_text("streamlit==1.37.0\n")
    (path / "slugdeploy.yaml").write_text(
        "slug: demo-app\n"
        "main_file: app.py\n"
        "title: Demo App\n"
        "authors: [Student One]\n"
    )
    return path


@pytest.fixture
def demo_spec(project_dir, settings):
    return load_spec(project_dir / "slugdeploy.yaml", settings)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def http():
    return FakeHTTPSession()


@pytest.fixture
def verifier(settings, clients, http, clock):
    return HealthVerifier(settings, clients, session=http, sleep=clock.sleep, clock=clock)


@pytest.fixture
def docker_ok():
    """Every docker invocation succeeds."""
    with patch("slugdeploy.image.run_tool", return_value=(0, ["done"])) as mock_run:
        yield mock_run
