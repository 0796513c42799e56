# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Stack manager module used by the deployer

Creates the scenario stack in the target account, or brings an existing
one up to date. Deploying the same template twice for the same lease is
a no-op.
"""

import time
from dataclasses import dataclass
from enum import Enum

from botocore.exceptions import ClientError

from isb_deployer.cloudformation import (
    CloudFormation,
    StackProperties,
    error_code,
)
from isb_deployer.errors import StackDeploymentError, StackTimeoutError
from isb_deployer.logger import configure_logger
from isb_deployer.retry import DEFAULT_RETRY_POLICY, cap_to_deadline

LOGGER = configure_logger(__name__)

STACK_POLL_INTERVAL = 10
STACK_CEILING = 300
STACK_CAPABILITIES = [
    "CAPABILITY_IAM",
    "CAPABILITY_NAMED_IAM",
    "CAPABILITY_AUTO_EXPAND",
]
CREATED_BY_TAG = {"Key": "createdBy", "Value": "isb-deployer"}


class StackAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    EXISTS = "exists"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StackResult:
    stack_id: str
    action: StackAction
    status: str = None


def build_stack_tags(lease_id, template_name):
    return [
        {"Key": "isb:lease-id", "Value": str(lease_id)},
        {"Key": "isb:template", "Value": template_name},
        dict(CREATED_BY_TAG),
    ]


class StackManager:
    def __init__(
            self,
            session,
            region,
            account_id=None,
            poll_interval=STACK_POLL_INTERVAL,
            ceiling=STACK_CEILING,
            retry_policy=DEFAULT_RETRY_POLICY,
            sleep=time.sleep,
            deadline=None,
    ):
        self.region = region
        self.account_id = account_id
        self.poll_interval = poll_interval
        self.ceiling = ceiling
        self.deadline = deadline
        self.cloudformation = CloudFormation(
            session,
            region,
            account_id=account_id,
            retry_policy=retry_policy,
            sleep=sleep,
        )

    def get_stack(self, stack_name):
        try:
            return self.cloudformation.describe_stack(stack_name)
        except ClientError as error:
            raise StackDeploymentError(
                f"Failed to describe stack {stack_name}: {error}",
                stack_name=stack_name,
                provider_code=error_code(error),
                cause=error,
            ) from error

    def deploy_or_update(self, stack_name, template_body, parameters,
                         tags=None):
        """
        Brings stack_name in line with template_body and parameters.

        Absent stacks are created, stable stacks updated and stacks with an
        operation in flight are left alone (SKIPPED). Stacks that failed
        their first creation are deleted and created again.
        """
        stack = self.get_stack(stack_name)
        status = stack["StackStatus"] if stack else None
        tags = tags or [dict(CREATED_BY_TAG)]

        if stack is None or status == "DELETE_COMPLETE":
            return self._create(stack_name, template_body, parameters, tags)

        if StackProperties.is_in_progress(status):
            LOGGER.info(
                "%s in %s - Stack %s is in %s, skipping deployment",
                self.account_id,
                self.region,
                stack_name,
                status,
            )
            return StackResult(
                stack_id=stack["StackId"],
                action=StackAction.SKIPPED,
                status=status,
            )

        if status in StackProperties.clean_before_create_states:
            LOGGER.info(
                "%s in %s - Stack %s is in %s, which requires clean up "
                "before it can be created again. Deleting stack...",
                self.account_id,
                self.region,
                stack_name,
                status,
            )
            self._delete(stack_name)
            return self._create(stack_name, template_body, parameters, tags)

        if status in StackProperties.update_eligible_states:
            return self._update(stack, template_body, parameters, tags)

        raise StackDeploymentError(
            f"Stack {stack_name} is in {status} and needs manual "
            "intervention before it can be deployed",
            stack_name=stack_name,
            status=status,
        )

    def _on_timeout(self, stack_name, ceiling):
        def timeout_error(status):
            return StackTimeoutError(
                f"Timed out after {ceiling:.0f} seconds waiting for stack "
                f"{stack_name} (last status {status})",
                stack_name=stack_name,
                status=status,
            )
        return timeout_error

    def _wait(self, stack_name):
        ceiling = cap_to_deadline(self.ceiling, self.deadline)
        return self.cloudformation.wait_for_terminal_state(
            stack_name,
            interval=self.poll_interval,
            ceiling=ceiling,
            on_timeout=self._on_timeout(stack_name, ceiling),
        )

    def _failed(self, stack_name, status):
        reason = self.cloudformation.first_failure_reason(stack_name)
        LOGGER.error(
            "%s in %s - Stack %s ended in %s: %s",
            self.account_id,
            self.region,
            stack_name,
            status,
            reason,
        )
        return StackDeploymentError(
            f"Stack {stack_name} ended in {status}"
            + (f": {reason}" if reason else ""),
            stack_name=stack_name,
            status=status,
        )

    def _provider_error(self, action, stack_name, error):
        return StackDeploymentError(
            f"Failed to {action} stack {stack_name}: {error}",
            stack_name=stack_name,
            provider_code=error_code(error),
            cause=error,
        )

    def _create(self, stack_name, template_body, parameters, tags):
        try:
            stack_id = self.cloudformation.create_stack(
                stack_name,
                template_body,
                parameters=parameters,
                capabilities=STACK_CAPABILITIES,
                tags=tags,
            )
        except ClientError as error:
            raise self._provider_error("create", stack_name, error) from error

        status = self._wait(stack_name)
        if status not in StackProperties.success_states:
            raise self._failed(stack_name, status)
        LOGGER.info(
            "%s in %s - Stack %s created",
            self.account_id,
            self.region,
            stack_name,
        )
        return StackResult(stack_id=stack_id, action=StackAction.CREATED,
                           status=status)

    def _update(self, stack, template_body, parameters, tags):
        stack_name = stack["StackName"]
        try:
            stack_id = self.cloudformation.update_stack(
                stack_name,
                template_body,
                parameters=parameters,
                capabilities=STACK_CAPABILITIES,
                tags=tags,
            )
        except ClientError as error:
            raise self._provider_error("update", stack_name, error) from error

        if stack_id is None:
            return StackResult(
                stack_id=stack["StackId"],
                action=StackAction.EXISTS,
                status=stack["StackStatus"],
            )

        status = self._wait(stack_name)
        if status not in StackProperties.success_states:
            raise self._failed(stack_name, status)
        LOGGER.info(
            "%s in %s - Stack %s updated",
            self.account_id,
            self.region,
            stack_name,
        )
        return StackResult(stack_id=stack_id, action=StackAction.UPDATED,
                           status=status)

    def _delete(self, stack_name):
        try:
            self.cloudformation.delete_stack(stack_name)
        except ClientError as error:
            raise self._provider_error("delete", stack_name, error) from error
        status = self._wait(stack_name)
        if status not in (None, "DELETE_COMPLETE"):
            raise self._failed(stack_name, status)
