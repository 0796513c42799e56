# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
CDK bootstrap module used by the deployer

Makes sure the target account and region carry a CDKToolkit stack recent
enough for synthesized CDK templates to deploy, creating or upgrading it
from the bootstrap template shipped with this package when needed.
"""

import os
import time
from functools import lru_cache

from botocore.exceptions import ClientError

from isb_deployer.cloudformation import CloudFormation, StackProperties
from isb_deployer.errors import (
    BootstrapFailedError,
    BootstrapTimeoutError,
    ParameterNotFoundError,
)
from isb_deployer.logger import configure_logger
from isb_deployer.parameter_store import ParameterStore
from isb_deployer.retry import DEFAULT_RETRY_POLICY, cap_to_deadline

LOGGER = configure_logger(__name__)

BOOTSTRAP_STACK_NAME = "CDKToolkit"
BOOTSTRAP_QUALIFIER = "hnb659fds"
BOOTSTRAP_VERSION_PARAMETER = f"/cdk-bootstrap/{BOOTSTRAP_QUALIFIER}/version"
MIN_BOOTSTRAP_VERSION = 6
BOOTSTRAP_POLL_INTERVAL = 5
BOOTSTRAP_CEILING = 180
BOOTSTRAP_CAPABILITIES = ["CAPABILITY_NAMED_IAM"]
BOOTSTRAP_TEMPLATE_PATH = os.path.join(
    os.path.dirname(os.path.abspath(__file__)),
    "templates",
    "cdk-bootstrap.yml",
)


@lru_cache(maxsize=None)
def load_bootstrap_template(path=BOOTSTRAP_TEMPLATE_PATH):
    with open(path, "r", encoding="utf-8") as template_file:
        return template_file.read()


class CdkBootstrapper:
    def __init__(
            self,
            session,
            region,
            account_id=None,
            poll_interval=BOOTSTRAP_POLL_INTERVAL,
            ceiling=BOOTSTRAP_CEILING,
            retry_policy=DEFAULT_RETRY_POLICY,
            sleep=time.sleep,
            template_path=BOOTSTRAP_TEMPLATE_PATH,
            deadline=None,
    ):
        self.deadline = deadline
        self.region = region
        self.account_id = account_id
        self.poll_interval = poll_interval
        self.ceiling = ceiling
        self.template_path = template_path
        self.parameter_store = ParameterStore(region, session)
        self.cloudformation = CloudFormation(
            session,
            region,
            account_id=account_id,
            retry_policy=retry_policy,
            sleep=sleep,
        )

    def check_status(self):
        """
        Returns the bootstrap version recorded in the target account, or
        None when the account was never bootstrapped.
        """
        try:
            value = self.parameter_store.fetch_parameter(
                BOOTSTRAP_VERSION_PARAMETER,
            )
        except ParameterNotFoundError:
            LOGGER.info(
                "%s in %s - CDK bootstrap not found",
                self.account_id,
                self.region,
            )
            return None
        try:
            version = int(value)
        except (TypeError, ValueError):
            LOGGER.warning(
                "%s in %s - Unreadable CDK bootstrap version %r",
                self.account_id,
                self.region,
                value,
            )
            version = 0
        LOGGER.info(
            "%s in %s - CDK bootstrap version %d detected",
            self.account_id,
            self.region,
            version,
        )
        return version

    def ensure_bootstrapped(self, account_id):
        if account_id:
            self.account_id = account_id
            self.cloudformation.account_id = account_id
        version = self.check_status()
        if version is not None and version >= MIN_BOOTSTRAP_VERSION:
            LOGGER.info(
                "%s in %s - Account already bootstrapped (version %d)",
                self.account_id,
                self.region,
                version,
            )
            return version
        if version is None:
            LOGGER.info(
                "%s in %s - Account not bootstrapped, bootstrapping now",
                self.account_id,
                self.region,
            )
        else:
            LOGGER.info(
                "%s in %s - Bootstrap version %d is older than %d, upgrading",
                self.account_id,
                self.region,
                version,
                MIN_BOOTSTRAP_VERSION,
            )
        self.bootstrap(account_id)
        return self.check_status()

    def _wait(self):
        ceiling = cap_to_deadline(self.ceiling, self.deadline)

        def timeout_error(status):
            return BootstrapTimeoutError(
                f"Timed out after {ceiling:.0f} seconds waiting for "
                f"{BOOTSTRAP_STACK_NAME} to stabilize (last status {status})",
            )

        return self.cloudformation.wait_for_terminal_state(
            BOOTSTRAP_STACK_NAME,
            interval=self.poll_interval,
            ceiling=ceiling,
            on_timeout=timeout_error,
        )

    def _stack_arguments(self):
        return dict(
            template_body=load_bootstrap_template(self.template_path),
            parameters=[{
                "ParameterKey": "Qualifier",
                "ParameterValue": BOOTSTRAP_QUALIFIER,
            }],
            capabilities=BOOTSTRAP_CAPABILITIES,
        )

    def bootstrap(self, account_id):
        """
        Creates or updates the CDKToolkit stack and waits until it is
        stable. A stack that is already in progress is only waited on.
        """
        status = self.cloudformation.get_stack_status(BOOTSTRAP_STACK_NAME)
        LOGGER.info(
            "%s in %s - Bootstrapping CDK, %s is in %s",
            account_id,
            self.region,
            BOOTSTRAP_STACK_NAME,
            status,
        )

        if StackProperties.is_in_progress(status):
            final_status = self._wait()
            if final_status not in StackProperties.update_eligible_states:
                raise BootstrapFailedError(
                    f"{BOOTSTRAP_STACK_NAME} ended in state {final_status}",
                )
            return

        if status in StackProperties.operator_action_states:
            raise BootstrapFailedError(
                f"{BOOTSTRAP_STACK_NAME} is in {status} and needs manual "
                "intervention",
            )

        try:
            if status in StackProperties.clean_before_create_states:
                self.cloudformation.delete_stack(BOOTSTRAP_STACK_NAME)
                self._wait()
                status = None

            if status is None:
                self.cloudformation.create_stack(
                    BOOTSTRAP_STACK_NAME, **self._stack_arguments()
                )
            else:
                stack_id = self.cloudformation.update_stack(
                    BOOTSTRAP_STACK_NAME, **self._stack_arguments()
                )
                if stack_id is None:
                    LOGGER.info(
                        "%s in %s - %s is already up to date",
                        account_id,
                        self.region,
                        BOOTSTRAP_STACK_NAME,
                    )
                    return
        except ClientError as error:
            raise BootstrapFailedError(
                f"Failed to bootstrap {BOOTSTRAP_STACK_NAME}: {error}",
                cause=error,
            ) from error

        final_status = self._wait()
        if final_status not in StackProperties.success_states:
            reason = self.cloudformation.first_failure_reason(
                BOOTSTRAP_STACK_NAME,
            )
            raise BootstrapFailedError(
                f"{BOOTSTRAP_STACK_NAME} ended in state {final_status}"
                + (f": {reason}" if reason else ""),
            )
        LOGGER.info(
            "%s in %s - CDK bootstrap complete",
            account_id,
            self.region,
        )
