# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Publishes 'Deployment Succeeded' and 'Deployment Failed' events to
EventBridge and classifies failures for downstream consumers.
"""

import json
import os
import re
from datetime import datetime, timezone

from botocore.exceptions import BotoCoreError, ClientError

from isb_deployer.errors import DeployerError, ErrorCode, FailureCategory
from isb_deployer.logger import configure_logger, redact_secrets

LOGGER = configure_logger(__name__)

SUCCESS_DETAIL_TYPE = "Deployment Succeeded"
FAILURE_DETAIL_TYPE = "Deployment Failed"

CATEGORY_PRIORITY = (
    FailureCategory.VALIDATION,
    FailureCategory.PERMISSION,
    FailureCategory.RESOURCE,
    FailureCategory.NETWORK,
)
# Categories reported on the bus, internal ones fold into these.
REPORTED_CATEGORIES = {
    FailureCategory.CONFIGURATION: FailureCategory.VALIDATION,
    FailureCategory.NOT_FOUND: FailureCategory.RESOURCE,
}
PROVIDER_CODE_CATEGORIES = {
    "ValidationError": FailureCategory.VALIDATION,
    "ValidationException": FailureCategory.VALIDATION,
    "InvalidParameterValue": FailureCategory.VALIDATION,
    "InvalidParameterValueException": FailureCategory.VALIDATION,
    "InvalidParameterCombination": FailureCategory.VALIDATION,
    "InsufficientCapabilitiesException": FailureCategory.VALIDATION,
    "AccessDenied": FailureCategory.PERMISSION,
    "AccessDeniedException": FailureCategory.PERMISSION,
    "UnauthorizedOperation": FailureCategory.PERMISSION,
    "Forbidden": FailureCategory.PERMISSION,
    "ExpiredToken": FailureCategory.PERMISSION,
    "ExpiredTokenException": FailureCategory.PERMISSION,
    "InvalidClientTokenId": FailureCategory.PERMISSION,
    "ResourceNotFoundException": FailureCategory.RESOURCE,
    "LimitExceeded": FailureCategory.RESOURCE,
    "LimitExceededException": FailureCategory.RESOURCE,
    "QuotaExceeded": FailureCategory.RESOURCE,
    "ServiceQuotaExceededException": FailureCategory.RESOURCE,
    "AlreadyExistsException": FailureCategory.RESOURCE,
    "RequestTimeout": FailureCategory.NETWORK,
    "RequestTimeoutException": FailureCategory.NETWORK,
    "NetworkError": FailureCategory.NETWORK,
    "Throttling": FailureCategory.NETWORK,
    "ThrottlingException": FailureCategory.NETWORK,
    "ServiceUnavailable": FailureCategory.NETWORK,
}
MESSAGE_PATTERNS = (
    (FailureCategory.VALIDATION,
     re.compile(r"\b(validation|invalid|malformed)\b", re.IGNORECASE)),
    (FailureCategory.PERMISSION,
     re.compile(r"\b(access denied|denied|unauthorized|forbidden|permission)\b",
                re.IGNORECASE)),
    (FailureCategory.RESOURCE,
     re.compile(r"\b(not found|limit exceeded|quota|insufficient)\b",
                re.IGNORECASE)),
    (FailureCategory.NETWORK,
     re.compile(r"\b(timeout|timed out|connection|network|unreachable)\b",
                re.IGNORECASE)),
)
MAX_CAUSE_DEPTH = 5


def _error_chain(error):
    depth = 0
    while error is not None and depth < MAX_CAUSE_DEPTH:
        yield error
        error = getattr(error, "cause", None) or error.__cause__
        depth += 1


def _provider_code(error):
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return getattr(error, "provider_code", None)


def _status_category(status_code):
    if status_code in (400, 422):
        return FailureCategory.VALIDATION
    if status_code in (401, 403):
        return FailureCategory.PERMISSION
    if status_code in (404, 409):
        return FailureCategory.RESOURCE
    if status_code in (408, 429) or (status_code and status_code >= 500):
        return FailureCategory.NETWORK
    return None


def _structured_categories(error):
    categories = set()
    for link in _error_chain(error):
        if isinstance(link, DeployerError):
            category = REPORTED_CATEGORIES.get(link.category, link.category)
            if category != FailureCategory.UNKNOWN:
                categories.add(category)
        code = _provider_code(link)
        if code in PROVIDER_CODE_CATEGORIES:
            categories.add(PROVIDER_CODE_CATEGORIES[code])
        status_category = _status_category(getattr(link, "status_code", None))
        if status_category:
            categories.add(status_category)
    return categories


def _message_categories(error):
    message = str(error)
    return {
        category
        for category, pattern in MESSAGE_PATTERNS
        if pattern.search(message)
    }


def categorize_error(error):
    """
    Returns the FailureCategory of error, one of validation, permission,
    resource, network or unknown.

    The structured fields of the error and its causes are consulted first:
    the error's own category, the AWS error code and the HTTP status. The
    message text is only matched when none of those give an answer. When
    several categories apply, the first one in CATEGORY_PRIORITY wins.
    """
    categories = _structured_categories(error) or _message_categories(error)
    for category in CATEGORY_PRIORITY:
        if category in categories:
            return category
    return FailureCategory.UNKNOWN


def error_code_of(error):
    if isinstance(error, DeployerError):
        provider_code = getattr(error, "provider_code", None)
        return provider_code or error.code.value
    if isinstance(error, ClientError):
        return _provider_code(error)
    if isinstance(error, BotoCoreError):
        return ErrorCode.AWS_API_ERROR.value
    return ErrorCode.UNKNOWN_ERROR.value


def _timestamp():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _without_empty(detail):
    return {key: value for key, value in detail.items() if value is not None}


class DeploymentEvents:
    def __init__(self, client, source, event_bus_name="default"):
        self.client = client
        self.source = source
        self.event_bus_name = event_bus_name

    def _put_event(self, detail_type, detail):
        payload = {
            "Source": self.source,
            "DetailType": detail_type,
            "Detail": json.dumps(detail),
            "EventBusName": self.event_bus_name,
        }
        trace_id = os.getenv("_X_AMZN_TRACE_ID")
        if trace_id:
            payload["TraceHeader"] = trace_id.split(";")[0]
        response = self.client.put_events(Entries=[payload])
        if response.get("FailedEntryCount"):
            entry = (response.get("Entries") or [{}])[0]
            raise RuntimeError(
                f"EventBridge rejected the event: {entry.get('ErrorCode')} "
                f"{entry.get('ErrorMessage')}",
            )

    def _emit(self, detail_type, detail):
        try:
            self._put_event(detail_type, detail)
        except (ClientError, BotoCoreError, RuntimeError) as error:
            LOGGER.error(
                "Failed to emit %s event for lease %s, continuing: %s",
                detail_type,
                detail.get("leaseId"),
                error,
            )
            return False
        LOGGER.info(
            "Emitted %s event for lease %s", detail_type, detail.get("leaseId"),
        )
        return True

    def deployment_succeeded(self, lease_id, account_id, stack_name, stack_id,
                             action, template_name=None):
        """
        Publishes a 'Deployment Succeeded' event. Returns whether the event
        was accepted; publishing failures are logged and never raised.
        """
        return self._emit(SUCCESS_DETAIL_TYPE, _without_empty({
            "leaseId": lease_id,
            "accountId": account_id,
            "stackName": stack_name,
            "stackId": stack_id,
            "templateName": template_name,
            "action": getattr(action, "value", action),
            "timestamp": _timestamp(),
        }))

    def deployment_failed(self, lease_id, account_id, error, stack_name=None,
                          template_name=None):
        return self._emit(FAILURE_DETAIL_TYPE, _without_empty({
            "leaseId": lease_id,
            "accountId": account_id,
            "errorMessage": redact_secrets(str(error)),
            "errorType": type(error).__name__,
            "errorCode": error_code_of(error),
            "failureCategory": categorize_error(error).value,
            "stackName": stack_name,
            "templateName": template_name,
            "timestamp": _timestamp(),
        }))
