# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Process lifetime state of the deployer

DeployerClients is built once per execution environment and handed to
every component. It caches boto3 clients per service and region, as well
as the GitHub token read from Secrets Manager.
"""

import json

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from isb_deployer.cache import Cache
from isb_deployer.errors import ConfigurationError
from isb_deployer.logger import configure_logger

LOGGER = configure_logger(__name__)
CLIENT_CONFIG = Config(
    retries={
        "max_attempts": 10,
    },
)
GITHUB_TOKEN_KEY = "github_token"


class DeployerClients:
    def __init__(self, config, session=None):
        self.config = config
        self.session = session or boto3.Session()
        self._cache = Cache()

    def client(self, service, region=None):
        region = region or self.config.aws_region
        key = ("client", service, region)
        if key not in self._cache:
            self._cache.add(key, self.session.client(
                service,
                region_name=region,
                config=CLIENT_CONFIG,
            ))
        return self._cache.check(key)

    def resource(self, service, region=None):
        region = region or self.config.aws_region
        key = ("resource", service, region)
        if key not in self._cache:
            self._cache.add(key, self.session.resource(
                service,
                region_name=region,
                config=CLIENT_CONFIG,
            ))
        return self._cache.check(key)

    def github_token(self):
        """
        Returns the GitHub token, reading it from Secrets Manager on first
        use. Returns None when no secret is configured.
        """
        if not self.config.github_token_secret_arn:
            return None
        token = self._cache.check(GITHUB_TOKEN_KEY)
        if token is None:
            token = self._read_github_token()
            self._cache.add(GITHUB_TOKEN_KEY, token)
        return token

    def _read_github_token(self):
        secret_arn = self.config.github_token_secret_arn
        LOGGER.debug("Reading GitHub token from %s", secret_arn)
        try:
            response = self.client("secretsmanager").get_secret_value(
                SecretId=secret_arn,
            )
        except ClientError as error:
            raise ConfigurationError(
                f"Failed to read the GitHub token secret {secret_arn}: "
                f"{error.response['Error']['Code']}",
                cause=error,
            ) from error

        secret = (response.get("SecretString") or "").strip()
        if secret.startswith("{"):
            try:
                secret = (json.loads(secret).get("token") or "").strip()
            except ValueError:
                raise ConfigurationError(
                    f"GitHub token secret {secret_arn} is not valid JSON",
                ) from None
        if not secret:
            raise ConfigurationError(
                f"GitHub token secret {secret_arn} is empty",
            )
        return secret

    def reset(self):
        self._cache.clear()
