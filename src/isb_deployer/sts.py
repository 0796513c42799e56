# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""STS module used by the deployer
"""

import time

import boto3
import botocore

from isb_deployer.errors import RoleAssumptionError
from isb_deployer.logger import configure_logger
from isb_deployer.retry import DEFAULT_RETRY_POLICY, with_retry

LOGGER = configure_logger(__name__)
DEFAULT_SESSION_NAME = "innovation-sandbox-deployer"
SESSION_DURATION_SECONDS = 3600
RETRYABLE_ERROR_CODES = frozenset([
    "Throttling",
    "RequestLimitExceeded",
    "IDPCommunicationError",
    "ServiceUnavailable",
    "InternalFailure",
])


class STS:
    """Class used for modeling STS
    """

    def __init__(self, client=None, retry_policy=DEFAULT_RETRY_POLICY,
                 sleep=time.sleep):
        self.client = client or boto3.client('sts')
        self.retry_policy = retry_policy
        self.sleep = sleep

    def _assume_role(self, role_arn, role_session_name):
        try:
            return self.client.assume_role(
                RoleArn=role_arn,
                RoleSessionName=role_session_name,
                DurationSeconds=SESSION_DURATION_SECONDS,
            )
        except botocore.exceptions.ClientError as error:
            code = error.response['Error']['Code']
            raise RoleAssumptionError(
                f"Failed to assume role {role_arn}: {code}",
                retryable=code in RETRYABLE_ERROR_CODES,
                cause=error,
            ) from error

    def assume_cross_account_role(self, role_arn, role_session_name):
        """Assumes a role in another account and returns a boto3 Session
        using the temporary credentials
        """
        LOGGER.debug(
            "Assuming into %s with session name: %s",
            role_arn,
            role_session_name,
        )

        sts_response = with_retry(
            lambda: self._assume_role(role_arn, role_session_name),
            self.retry_policy,
            sleep=self.sleep,
        )

        credentials = sts_response.get('Credentials') or {}
        if not all(
            credentials.get(key)
            for key in ('AccessKeyId', 'SecretAccessKey', 'SessionToken')
        ):
            raise RoleAssumptionError(
                f"STS returned incomplete credentials for role {role_arn}",
            )
        LOGGER.info(
            "Assumed into %s with session name: %s",
            role_arn,
            role_session_name,
        )

        return boto3.Session(
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken'],
        )

    @staticmethod
    def _build_role_arn(
        partition,
        account_id,
        role_name,
    ):
        return f"arn:{partition}:iam::{account_id}:role/{role_name}"

    def assume_target_account_role(
        self,
        account_id,
        role_name,
        session_name=DEFAULT_SESSION_NAME,
        intermediate_role_arn=None,
        partition="aws",
    ):
        """
        Assumes role_name in the sandbox account.

        When an intermediate role is configured, it is assumed first and
        its credentials are used to assume into the sandbox account.
        """
        sts = self
        if intermediate_role_arn:
            LOGGER.info(
                "Using intermediate role %s to assume into account %s",
                intermediate_role_arn,
                account_id,
            )
            intermediate_session = self.assume_cross_account_role(
                intermediate_role_arn,
                session_name,
            )
            sts = STS(
                intermediate_session.client('sts'),
                retry_policy=self.retry_policy,
                sleep=self.sleep,
            )

        return sts.assume_cross_account_role(
            STS._build_role_arn(partition, account_id, role_name),
            session_name,
        )
