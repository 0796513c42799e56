# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Maps lease attributes onto the parameters a template declares.

Only parameters with a known name and a non-empty lease value are
returned, anything else is left to the template's own default.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class LeaseDetails:
    lease_id: str
    account_id: str
    requester_email: str = None
    budget_amount: object = None
    expiration_date: str = None
    status: str = None
    template_name: str = None

    @classmethod
    def from_item(cls, item):
        """
        Builds LeaseDetails from a lease table item. Accepts both the
        deployer's attribute names and the ones written by Innovation
        Sandbox itself.
        """
        return cls(
            lease_id=_first(item, "leaseId", "uuid"),
            account_id=_first(item, "accountId", "awsAccountId"),
            requester_email=_first(item, "requesterEmail", "userEmail"),
            budget_amount=_first(item, "budgetAmount", "maxSpend"),
            expiration_date=_first(item, "expirationDate"),
            status=_first(item, "status"),
            template_name=_first(
                item, "templateName", "originalLeaseTemplateName",
            ),
        )


def _first(item, *keys):
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


PARAMETER_MAPPINGS = {
    "AccountId": "account_id",
    "Account": "account_id",
    "AWSAccountId": "account_id",
    "AwsAccountId": "account_id",
    "LeaseId": "lease_id",
    "Lease": "lease_id",
    "Budget": "budget_amount",
    "BudgetAmount": "budget_amount",
    "RequesterEmail": "requester_email",
    "Email": "requester_email",
    "UserEmail": "requester_email",
    "ExpirationDate": "expiration_date",
    "Expiration": "expiration_date",
    "LeaseExpiration": "expiration_date",
    "TemplateName": "template_name",
    "Template": "template_name",
    "Status": "status",
    "LeaseStatus": "status",
}


def map_parameters(lease, required_names):
    """
    Returns (parameter name, value) pairs in the order of required_names.

    Unknown names are skipped, so are attributes that are None or empty.
    Values are always rendered as strings.
    """
    pairs = []
    for name in required_names:
        attribute = PARAMETER_MAPPINGS.get(name)
        if attribute is None:
            continue
        value = getattr(lease, attribute)
        if value is None or value == "":
            continue
        pairs.append((name, str(value)))
    return pairs


def to_cloudformation_parameters(pairs):
    return [
        {"ParameterKey": key, "ParameterValue": value}
        for key, value in pairs
    ]
