# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""CloudFormation module used by the deployer

Wraps the stack level calls shared by the CDK bootstrapper and the stack
manager: describe, create, update, delete and waiting for a stack to reach
a terminal state.
"""

import time

from botocore.config import Config
from botocore.exceptions import ClientError

from isb_deployer.errors import TransientProviderError
from isb_deployer.logger import configure_logger
from isb_deployer.retry import DEFAULT_RETRY_POLICY, poll_until, with_retry

LOGGER = configure_logger(__name__)
CFN_CONFIG = Config(
    retries=dict(
        max_attempts=10
    )
)
TRANSIENT_ERROR_CODES = frozenset([
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "ServiceUnavailable",
    "InternalFailure",
    "InternalError",
])
NO_UPDATES_MESSAGES = (
    "No updates are to be performed",
    "The submitted information didn't contain changes.",
)


class StackProperties:
    update_eligible_states = frozenset([
        'CREATE_COMPLETE',
        'UPDATE_COMPLETE',
        'UPDATE_ROLLBACK_COMPLETE',
        'IMPORT_COMPLETE',
        'IMPORT_ROLLBACK_COMPLETE',
    ])
    clean_before_create_states = frozenset([
        'CREATE_FAILED',
        'ROLLBACK_COMPLETE',
    ])
    operator_action_states = frozenset([
        'ROLLBACK_FAILED',
        'DELETE_FAILED',
        'UPDATE_ROLLBACK_FAILED',
        'IMPORT_ROLLBACK_FAILED',
    ])
    success_states = frozenset([
        'CREATE_COMPLETE',
        'UPDATE_COMPLETE',
        'IMPORT_COMPLETE',
    ])
    failure_states = frozenset([
        'CREATE_FAILED',
        'ROLLBACK_COMPLETE',
        'ROLLBACK_FAILED',
        'UPDATE_FAILED',
        'UPDATE_ROLLBACK_COMPLETE',
        'UPDATE_ROLLBACK_FAILED',
        'DELETE_COMPLETE',
        'DELETE_FAILED',
        'IMPORT_ROLLBACK_COMPLETE',
        'IMPORT_ROLLBACK_FAILED',
    ])
    failed_resource_statuses = frozenset([
        'CREATE_FAILED',
        'UPDATE_FAILED',
        'DELETE_FAILED',
        'IMPORT_FAILED',
    ])

    @staticmethod
    def is_in_progress(status):
        return bool(status) and status.endswith('_IN_PROGRESS')


def error_code(error):
    return error.response.get('Error', {}).get('Code', '')


def error_message(error):
    return error.response.get('Error', {}).get('Message', str(error))


def is_no_updates_error(error):
    return (
        isinstance(error, ClientError)
        and any(message in error_message(error) for message in NO_UPDATES_MESSAGES)
    )


def is_stack_missing_error(error):
    return (
        isinstance(error, ClientError)
        and error_code(error) == 'ValidationError'
        and 'does not exist' in error_message(error)
    )


class CloudFormation:
    def __init__(
            self,
            session,
            region,
            account_id=None,  # Used for logging visibility
            retry_policy=DEFAULT_RETRY_POLICY,
            sleep=time.sleep,
    ):
        self.client = session.client(
            'cloudformation',
            region_name=region,
            config=CFN_CONFIG,
        )
        self.region = region
        self.account_id = account_id
        self.retry_policy = retry_policy
        self.sleep = sleep

    def _call(self, operation_name, **kwargs):
        """
        Invokes a CloudFormation API operation, retrying throttling and
        other transient failures. Any other ClientError is raised as is.
        """
        operation = getattr(self.client, operation_name)

        def attempt():
            try:
                return operation(**kwargs)
            except ClientError as error:
                if error_code(error) in TRANSIENT_ERROR_CODES:
                    raise TransientProviderError(
                        f"{operation_name} failed with {error_code(error)}",
                        provider_code=error_code(error),
                        cause=error,
                    ) from error
                raise

        return with_retry(attempt, self.retry_policy, sleep=self.sleep)

    def describe_stack(self, stack_name):
        """Returns the stack description or None when the stack does not exist
        """
        try:
            response = self._call('describe_stacks', StackName=stack_name)
        except ClientError as error:
            if is_stack_missing_error(error):
                return None
            raise
        stacks = response.get('Stacks') or []
        return stacks[0] if stacks else None

    def get_stack_status(self, stack_name):
        stack = self.describe_stack(stack_name)
        return stack['StackStatus'] if stack else None

    def create_stack(self, stack_name, template_body, parameters=None,
                     capabilities=None, tags=None):
        LOGGER.info(
            '%s in %s - Creating CloudFormation stack %s',
            self.account_id,
            self.region,
            stack_name,
        )
        response = self._call(
            'create_stack',
            StackName=stack_name,
            TemplateBody=template_body,
            Parameters=parameters or [],
            Capabilities=capabilities or [],
            Tags=tags or [],
        )
        return response['StackId']

    def update_stack(self, stack_name, template_body, parameters=None,
                     capabilities=None, tags=None):
        """
        Starts a stack update. Returns the stack id, or None when
        CloudFormation reports there is nothing to update.
        """
        LOGGER.info(
            '%s in %s - Updating CloudFormation stack %s',
            self.account_id,
            self.region,
            stack_name,
        )
        try:
            response = self._call(
                'update_stack',
                StackName=stack_name,
                TemplateBody=template_body,
                Parameters=parameters or [],
                Capabilities=capabilities or [],
                Tags=tags or [],
            )
        except ClientError as error:
            if is_no_updates_error(error):
                LOGGER.info(
                    '%s in %s - CloudFormation stack %s does not contain '
                    'changes',
                    self.account_id,
                    self.region,
                    stack_name,
                )
                return None
            raise
        return response['StackId']

    def delete_stack(self, stack_name):
        LOGGER.info(
            '%s in %s - Deleting CloudFormation stack %s',
            self.account_id,
            self.region,
            stack_name,
        )
        self._call('delete_stack', StackName=stack_name)

    def first_failure_reason(self, stack_name):
        """
        Returns the reason of the most recent failed resource event of the
        stack, if any. Failing to read the events never raises.
        """
        try:
            response = self._call('describe_stack_events', StackName=stack_name)
        except (ClientError, TransientProviderError) as error:
            LOGGER.debug(
                '%s in %s - Could not read events of %s: %s',
                self.account_id,
                self.region,
                stack_name,
                error,
            )
            return None
        for event in response.get('StackEvents', []):
            if event.get('ResourceStatus') in StackProperties.failed_resource_statuses:
                reason = event.get('ResourceStatusReason')
                if reason:
                    return f"{event.get('LogicalResourceId')}: {reason}"
        return None

    def wait_for_terminal_state(self, stack_name, interval, ceiling, on_timeout):
        """
        Polls the stack every interval seconds until it is no longer in
        progress, returning its final status or None once it is gone.
        """
        LOGGER.info(
            '%s in %s - Waiting for CloudFormation stack: %s to stabilize',
            self.account_id,
            self.region,
            stack_name,
        )

        def current_status():
            status = self.get_stack_status(stack_name)
            LOGGER.debug(
                '%s in %s - CloudFormation stack %s is in %s',
                self.account_id,
                self.region,
                stack_name,
                status,
            )
            return status

        return poll_until(
            current_status,
            lambda status: not StackProperties.is_in_progress(status),
            interval=interval,
            ceiling=ceiling,
            on_timeout=on_timeout,
            sleep=self.sleep,
        )
