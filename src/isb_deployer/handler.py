# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Lambda entry point of the deployer.

Invoked by the 'LeaseApproved' EventBridge rule. The configuration and the
AWS clients are created on the first invocation and reused for the
lifetime of the execution environment.
"""

from aws_xray_sdk.core import patch_all

from isb_deployer.clients import DeployerClients
from isb_deployer.config import load_config
from isb_deployer.errors import ConfigurationError
from isb_deployer.logger import configure_logger
from isb_deployer.metrics import MetricName
from isb_deployer.orchestrator import DeploymentOrchestrator
from isb_deployer.retry import Deadline

patch_all()

LOGGER = configure_logger(__name__)

_ORCHESTRATOR = None


def get_orchestrator():
    global _ORCHESTRATOR  # pylint: disable=global-statement
    if _ORCHESTRATOR is None:
        config = load_config()
        _ORCHESTRATOR = DeploymentOrchestrator(
            config,
            DeployerClients(config),
        )
    return _ORCHESTRATOR


def reset_orchestrator():
    global _ORCHESTRATOR  # pylint: disable=global-statement
    _ORCHESTRATOR = None


def invocation_deadline(context):
    if callable(getattr(context, "get_remaining_time_in_millis", None)):
        return Deadline.from_context(context)
    return Deadline.default()


def lambda_handler(event, context):
    envelope = event if isinstance(event, dict) else {}
    LOGGER.info(
        "Received %s event from %s (request %s)",
        envelope.get("detail-type"),
        envelope.get("source"),
        getattr(context, "aws_request_id", None),
    )
    cold_start = _ORCHESTRATOR is None
    try:
        orchestrator = get_orchestrator()
    except ConfigurationError as error:
        LOGGER.error("Deployer is misconfigured: %s", error)
        raise
    orchestrator.metrics.record_count(
        MetricName.COLD_START if cold_start else MetricName.WARM_START,
    )

    result = orchestrator.run(event, deadline=invocation_deadline(context))
    LOGGER.info(
        "Lease %s finished with status %s",
        result.lease_id,
        result.status.value,
    )
    return result.to_response()
