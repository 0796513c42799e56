# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Metrics module used by the deployer

Collects counts and durations during an invocation and pushes them to
CloudWatch under the deployer namespace in a single put_metric_data call
when the invocation ends.
"""

import time
from contextlib import contextmanager
from enum import Enum

from botocore.exceptions import BotoCoreError, ClientError

from isb_deployer.logger import configure_logger

LOGGER = configure_logger(__name__)

COUNT = "Count"
MILLISECONDS = "Milliseconds"
# put_metric_data accepts at most 1000 entries per request.
MAX_METRICS_PER_REQUEST = 1000


class MetricName(str, Enum):
    TEMPLATE_RESOLUTION_DURATION = "TemplateResolutionDuration"
    TEMPLATE_RESOLUTION_SUCCESS = "TemplateResolutionSuccess"
    TEMPLATE_RESOLUTION_FAILURE = "TemplateResolutionFailure"
    TEMPLATE_NOT_FOUND = "TemplateNotFound"
    CDK_SYNTHESIS_DURATION = "CdkSynthesisDuration"
    CDK_SYNTHESIS_SUCCESS = "CdkSynthesisSuccess"
    CDK_SYNTHESIS_FAILURE = "CdkSynthesisFailure"
    CDK_BOOTSTRAP_DURATION = "CdkBootstrapDuration"
    GIT_CLONE_DURATION = "GitCloneDuration"
    GITHUB_API_DURATION = "GitHubApiDuration"
    GITHUB_RATE_LIMITED = "GitHubRateLimited"
    DEPLOYMENT_DURATION = "DeploymentDuration"
    DEPLOYMENT_SUCCESS = "DeploymentSuccess"
    DEPLOYMENT_FAILURE = "DeploymentFailure"
    STACK_CREATE = "StackCreate"
    STACK_UPDATE = "StackUpdate"
    STACK_EXISTS = "StackExists"
    STACK_SKIPPED = "StackSkipped"
    COLD_START = "ColdStart"
    WARM_START = "WarmStart"
    INVOCATION_DURATION = "InvocationDuration"


def _dimensions(dimensions):
    return [
        {"Name": name, "Value": str(value)}
        for name, value in sorted((dimensions or {}).items())
        if value not in (None, "")
    ]


class DeployerMetrics:
    """
    Buffers metric data for one invocation. Without a client the data is
    collected but never sent.
    """

    def __init__(self, client, namespace, clock=time.monotonic):
        self.cw = client
        self.namespace = namespace
        self.clock = clock
        self.pending = []

    def record(self, name, value, unit, dimensions=None):
        datum = {
            "MetricName": getattr(name, "value", name),
            "Value": value,
            "Unit": unit,
        }
        if dimensions:
            datum["Dimensions"] = _dimensions(dimensions)
        self.pending.append(datum)
        LOGGER.debug("Metric recorded %s=%s %s", datum["MetricName"], value, unit)

    def record_count(self, name, count=1, dimensions=None):
        self.record(name, count, COUNT, dimensions)

    def record_duration(self, name, started, dimensions=None):
        elapsed_ms = round((self.clock() - started) * 1000, 3)
        self.record(name, elapsed_ms, MILLISECONDS, dimensions)

    def start_timer(self):
        return self.clock()

    @contextmanager
    def timed(self, name, success=None, failure=None, dimensions=None):
        """
        Records the duration of the block as name. When given, success or
        failure is counted depending on how the block exits; failures
        carry the error type as a dimension.
        """
        started = self.start_timer()
        try:
            yield
        except Exception as error:
            if failure:
                self.record_count(failure, dimensions={
                    **(dimensions or {}), "ErrorType": type(error).__name__,
                })
            raise
        finally:
            self.record_duration(name, started, dimensions)
        if success:
            self.record_count(success, dimensions=dimensions)

    def put_metric_data(self, metric_data):
        if not isinstance(metric_data, list):
            metric_data = [metric_data]
        self.cw.put_metric_data(Namespace=self.namespace, MetricData=metric_data)

    def flush(self):
        """
        Sends the buffered metric data and clears the buffer. Failing to
        publish metrics never fails the deployment.
        """
        pending, self.pending = self.pending, []
        if not pending or self.cw is None:
            return
        try:
            for start in range(0, len(pending), MAX_METRICS_PER_REQUEST):
                self.put_metric_data(
                    pending[start:start + MAX_METRICS_PER_REQUEST],
                )
        except (ClientError, BotoCoreError) as error:
            LOGGER.warning(
                "Failed to publish %d metrics to %s: %s",
                len(pending),
                self.namespace,
                error,
            )
