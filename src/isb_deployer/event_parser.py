# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Validates the EventBridge 'Lease Approved' event that triggers a
deployment.
"""

from collections import namedtuple

from schema import And, Optional, Schema, SchemaError

from isb_deployer.errors import EventValidationError

NON_EMPTY_STRING = And(str, lambda value: len(value.strip()) > 0)

LEASE_EVENT_SCHEMA = Schema(
    {
        "detail": {
            "leaseId": NON_EMPTY_STRING,
            "userEmail": NON_EMPTY_STRING,
            Optional("approvedBy"): object,
            Optional("templateName"): object,
            Optional(str): object,
        },
        Optional(str): object,
    }
)

LeaseEvent = namedtuple(
    "LeaseEvent",
    ["lease_id", "user_email", "approved_by", "template_name"],
)


def _optional_string(detail, key):
    value = detail.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_lease_event(event):
    """
    Returns a LeaseEvent for a valid lease approval event, raises
    EventValidationError otherwise.

    approvedBy and templateName are optional, blank or non-string values
    are treated as absent.
    """
    if not isinstance(event, dict):
        raise EventValidationError("Event must be an object")
    try:
        LEASE_EVENT_SCHEMA.validate(event)
    except SchemaError as error:
        raise EventValidationError(
            f"Invalid lease approval event: {error.code}",
            cause=error,
        ) from None

    detail = event["detail"]
    return LeaseEvent(
        lease_id=detail["leaseId"].strip(),
        user_email=detail["userEmail"].strip(),
        approved_by=_optional_string(detail, "approvedBy"),
        template_name=_optional_string(detail, "templateName"),
    )
