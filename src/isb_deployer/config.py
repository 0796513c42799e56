# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""Config module used by the deployer
Relates to reading and validating the Lambda environment variables
"""

import os
import re
from dataclasses import dataclass

from isb_deployer.errors import ConfigurationError
from isb_deployer.logger import configure_logger

LOGGER = configure_logger(__name__)

DEFAULT_GITHUB_REPO = "co-cddo/ndx_try_aws_scenarios"
DEFAULT_GITHUB_BRANCH = "main"
DEFAULT_GITHUB_PATH = "cloudformation/scenarios"
DEFAULT_TARGET_ROLE_NAME = "ndx_IsbUsersPS"
DEFAULT_DEPLOY_REGION = "us-east-1"
DEFAULT_AWS_REGION = "eu-west-2"
DEFAULT_EVENT_SOURCE = "isb-deployer"
DEFAULT_EVENT_BUS_NAME = "default"
DEFAULT_METRICS_NAMESPACE = "ISBDeployer"

GITHUB_REPO_REGEX = re.compile(r"\A[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+\Z")
GITHUB_PATH_REGEX = re.compile(r"\A[A-Za-z0-9_.-]+(/[A-Za-z0-9_.-]+)*\Z")
AWS_REGION_REGEX = re.compile(r"\A[a-z]{2}(-gov|-iso[a-z]?)?-[a-z]+-\d\Z")
AWS_ACCOUNT_ID_REGEX = re.compile(r"\A\d{12}\Z")
IAM_ROLE_NAME_REGEX = re.compile(r"\A[\w+=,.@/-]{1,64}\Z")
IAM_ROLE_ARN_REGEX = re.compile(
    r"\Aarn:aws[a-z-]*:iam::\d{12}:role/[\w+=,.@/-]{1,64}\Z"
)
SECRET_ARN_REGEX = re.compile(
    r"\Aarn:aws[a-z-]*:secretsmanager:[a-z0-9-]+:\d{12}:secret:[\w/+=.@-]+\Z"
)


@dataclass(frozen=True)
class Config:
    lease_table_name: str
    github_repo: str = DEFAULT_GITHUB_REPO
    github_branch: str = DEFAULT_GITHUB_BRANCH
    github_path: str = DEFAULT_GITHUB_PATH
    github_token_secret_arn: str = None
    target_role_name: str = DEFAULT_TARGET_ROLE_NAME
    intermediate_role_arn: str = None
    deploy_region: str = DEFAULT_DEPLOY_REGION
    aws_region: str = DEFAULT_AWS_REGION
    event_source: str = DEFAULT_EVENT_SOURCE
    event_bus_name: str = DEFAULT_EVENT_BUS_NAME
    metrics_namespace: str = DEFAULT_METRICS_NAMESPACE


def validate_account_id(account_id):
    if not AWS_ACCOUNT_ID_REGEX.match(str(account_id or "")):
        raise ConfigurationError(
            f"Invalid AWS account id: {account_id!r}. "
            "Expected a 12 digit string.",
        )
    return str(account_id)


def validate_region(region):
    if not AWS_REGION_REGEX.match(region or ""):
        raise ConfigurationError(f"Invalid AWS region: {region!r}")
    return region


def _optional(environ, name, default=None):
    value = environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _required(environ, name):
    value = _optional(environ, name)
    if value is None:
        raise ConfigurationError(
            f"Required environment variable {name} is not set",
        )
    return value


def load_config(environ=None):
    """
    Loads and validates the configuration from the environment.

    Raises ConfigurationError on the first missing or malformed setting,
    before any AWS call is made.
    """
    environ = os.environ if environ is None else environ
    config = Config(
        lease_table_name=_required(environ, "LEASE_TABLE_NAME"),
        github_repo=_optional(environ, "GITHUB_REPO", DEFAULT_GITHUB_REPO),
        github_branch=_optional(environ, "GITHUB_BRANCH", DEFAULT_GITHUB_BRANCH),
        github_path=_optional(
            environ, "GITHUB_PATH", DEFAULT_GITHUB_PATH,
        ).strip("/"),
        github_token_secret_arn=_optional(environ, "GITHUB_TOKEN_SECRET_ARN"),
        target_role_name=_optional(
            environ, "TARGET_ROLE_NAME", DEFAULT_TARGET_ROLE_NAME,
        ),
        intermediate_role_arn=_optional(environ, "INTERMEDIATE_ROLE_ARN"),
        deploy_region=_optional(environ, "DEPLOY_REGION", DEFAULT_DEPLOY_REGION),
        aws_region=_optional(environ, "AWS_REGION", DEFAULT_AWS_REGION),
        event_source=_optional(environ, "EVENT_SOURCE", DEFAULT_EVENT_SOURCE),
        event_bus_name=_optional(
            environ, "EVENT_BUS_NAME", DEFAULT_EVENT_BUS_NAME,
        ),
        metrics_namespace=_optional(
            environ, "METRICS_NAMESPACE", DEFAULT_METRICS_NAMESPACE,
        ),
    )
    _validate(config)
    LOGGER.info(
        "Deploying scenarios from %s@%s:%s into %s",
        config.github_repo,
        config.github_branch,
        config.github_path,
        config.deploy_region,
    )
    return config


def _validate(config):
    if not GITHUB_REPO_REGEX.match(config.github_repo):
        raise ConfigurationError(
            f"GITHUB_REPO must look like 'org/repo', got {config.github_repo!r}",
        )
    if not GITHUB_PATH_REGEX.match(config.github_path) or (
        ".." in config.github_path.split("/")
    ):
        raise ConfigurationError(
            f"GITHUB_PATH is not a safe relative path: {config.github_path!r}",
        )
    if not IAM_ROLE_NAME_REGEX.match(config.target_role_name):
        raise ConfigurationError(
            f"TARGET_ROLE_NAME is not a valid role name: "
            f"{config.target_role_name!r}",
        )
    if config.intermediate_role_arn and not IAM_ROLE_ARN_REGEX.match(
        config.intermediate_role_arn,
    ):
        raise ConfigurationError(
            "INTERMEDIATE_ROLE_ARN is not a valid IAM role ARN",
        )
    if config.github_token_secret_arn and not SECRET_ARN_REGEX.match(
        config.github_token_secret_arn,
    ):
        raise ConfigurationError(
            "GITHUB_TOKEN_SECRET_ARN is not a valid Secrets Manager ARN",
        )
    validate_region(config.deploy_region)
    validate_region(config.aws_region)
