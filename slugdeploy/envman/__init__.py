from .redact import redact_data, redact_string as redact_secrets
from .ssm import container_secrets, delete_parameters, missing_parameters, ssm_path

__all__ = [
    "container_secrets",
    "delete_parameters",
    "missing_parameters",
    "redact_data",
    "redact_secrets",
    "ssm_path",
]
