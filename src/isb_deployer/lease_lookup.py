# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Lease lookup module used by the deployer
Reads lease records from the Innovation Sandbox lease table
"""

import time

from botocore.exceptions import ClientError

from isb_deployer.errors import LeaseLookupError, LeaseNotFoundError
from isb_deployer.logger import configure_logger
from isb_deployer.parameter_mapper import LeaseDetails
from isb_deployer.retry import DEFAULT_RETRY_POLICY, with_retry

LOGGER = configure_logger(__name__)
RETRYABLE_ERROR_CODES = frozenset([
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
])


class LeaseLookup:
    """Class used for reading lease records from DynamoDB
    """

    def __init__(self, table, retry_policy=DEFAULT_RETRY_POLICY,
                 sleep=time.sleep):
        self.table = table
        self.retry_policy = retry_policy
        self.sleep = sleep

    def _get_item(self, user_email, lease_id):
        try:
            return self.table.get_item(
                Key={"userEmail": user_email, "uuid": lease_id},
                ConsistentRead=True,
            )
        except ClientError as error:
            code = error.response["Error"]["Code"]
            raise LeaseLookupError(
                f"Failed to look up lease {lease_id} in table "
                f"{self.table.name}: {code}",
                retryable=code in RETRYABLE_ERROR_CODES,
                cause=error,
            ) from error

    def lookup(self, user_email, lease_id):
        """
        Returns the LeaseDetails of the lease, keyed on the requesting
        user's email and the lease uuid. Throttled reads are retried.
        """
        LOGGER.debug(
            "Looking up lease %s in %s", lease_id, self.table.name,
        )
        response = with_retry(
            lambda: self._get_item(user_email, lease_id),
            self.retry_policy,
            sleep=self.sleep,
        )

        item = response.get("Item")
        if not item:
            raise LeaseNotFoundError(f"Lease not found: {lease_id}")

        lease = LeaseDetails.from_item(item)
        if not lease.lease_id or not lease.account_id:
            raise LeaseLookupError(
                f"Lease {lease_id} is missing required fields "
                "(lease id or account id)",
            )
        LOGGER.info(
            "Found lease %s for account %s", lease.lease_id, lease.account_id,
        )
        return lease
