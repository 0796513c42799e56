# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Deployment orchestrator

Runs one deployment for an approved lease: look up the lease, resolve its
scenario into a template, assume into the sandbox account, deploy the
stack and publish the outcome.
"""

import json
import time
from dataclasses import dataclass, replace
from enum import Enum

from botocore.exceptions import BotoCoreError, ClientError

from isb_deployer.cdk_bootstrapper import CdkBootstrapper
from isb_deployer.cdk_synthesizer import CdkSynthesizer
from isb_deployer.config import validate_account_id, validate_region
from isb_deployer.deployment_events import DeploymentEvents
from isb_deployer.errors import DeployerError
from isb_deployer.event_parser import parse_lease_event
from isb_deployer.lease_lookup import LeaseLookup
from isb_deployer.logger import configure_logger
from isb_deployer.metrics import DeployerMetrics, MetricName
from isb_deployer.parameter_mapper import (
    map_parameters,
    to_cloudformation_parameters,
)
from isb_deployer.retry import Deadline
from isb_deployer.scenario_detector import ScenarioDetector
from isb_deployer.scenario_fetcher import ScenarioFetcher
from isb_deployer.stack_manager import (
    StackAction,
    StackManager,
    build_stack_tags,
)
from isb_deployer.stack_name import StackIdentity
from isb_deployer.sts import STS, DEFAULT_SESSION_NAME
from isb_deployer.template_resolver import TemplateResolver
from isb_deployer.template_validator import validate_template

LOGGER = configure_logger(__name__)

UNKNOWN = "unknown"
NO_TEMPLATE_CONFIGURED = "No template configured"
TEMPLATE_NOT_FOUND = "Template not found"

STACK_ACTION_METRICS = {
    StackAction.CREATED: MetricName.STACK_CREATE,
    StackAction.UPDATED: MetricName.STACK_UPDATE,
    StackAction.EXISTS: MetricName.STACK_EXISTS,
    StackAction.SKIPPED: MetricName.STACK_SKIPPED,
}


class OrchestrationStatus(str, Enum):
    DEPLOYED = "deployed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class DeploymentOutcome:
    stack_id: str
    action: object
    parameters_used: int
    parameters_skipped: int


@dataclass(frozen=True)
class OrchestrationResult:
    status: OrchestrationStatus
    lease_id: str = None
    reason: str = None
    stack_name: str = None
    outcome: DeploymentOutcome = None
    error: Exception = None

    def to_response(self):
        body = {"status": self.status.value, "leaseId": self.lease_id}
        if self.reason:
            body["reason"] = self.reason
        if self.stack_name:
            body["stackName"] = self.stack_name
        if self.outcome:
            body["stackId"] = self.outcome.stack_id
            body["action"] = self.outcome.action.value
            body["parametersUsed"] = self.outcome.parameters_used
            body["parametersSkipped"] = self.outcome.parameters_skipped
        if self.error is not None:
            body["error"] = str(self.error)
        return {
            "statusCode": 500 if self.status == OrchestrationStatus.FAILED else 200,
            "body": json.dumps(body),
        }


def deploy_with_parameters(stack_manager, stack_name, template_body,
                           template_parameters, lease, tags=None):
    """
    Maps the lease onto the template parameters and deploys the stack.

    Parameters without a lease value are left out so the template's own
    defaults apply; they are counted as skipped.
    """
    mapped = map_parameters(lease, template_parameters)
    parameters_skipped = len(template_parameters) - len(mapped)
    if mapped:
        LOGGER.info(
            "Stack %s deploying with %d parameters: %s",
            stack_name,
            len(mapped),
            ", ".join(name for name, _ in mapped),
        )
    else:
        LOGGER.info(
            "Stack %s has no parameters to map, deploying without parameters",
            stack_name,
        )
    if parameters_skipped:
        LOGGER.debug(
            "Stack %s skipped %d parameters (no mapping or no value)",
            stack_name,
            parameters_skipped,
        )

    result = stack_manager.deploy_or_update(
        stack_name,
        template_body,
        to_cloudformation_parameters(mapped),
        tags=tags,
    )
    return DeploymentOutcome(
        stack_id=result.stack_id,
        action=result.action,
        parameters_used=len(mapped),
        parameters_skipped=parameters_skipped,
    )


class DeploymentOrchestrator:
    def __init__(
            self,
            config,
            clients,
            resolver=None,
            events=None,
            lease_lookup=None,
            sts=None,
            stack_manager_factory=None,
            bootstrapper_factory=None,
            metrics=None,
            sleep=time.sleep,
    ):
        self.config = config
        self.clients = clients
        self.metrics = metrics or DeployerMetrics(
            clients.client("cloudwatch"),
            config.metrics_namespace,
        )
        self.resolver = resolver or TemplateResolver(
            config,
            detector=ScenarioDetector(
                config.github_repo,
                config.github_path,
                token_provider=clients.github_token,
            ),
            fetcher=ScenarioFetcher(
                config.github_repo,
                config.github_path,
                token_provider=clients.github_token,
            ),
            synthesizer=CdkSynthesizer(),
            sleep=sleep,
            metrics=self.metrics,
        )
        self.events = events or DeploymentEvents(
            clients.client("events"),
            source=config.event_source,
            event_bus_name=config.event_bus_name,
        )
        self.lease_lookup = lease_lookup or LeaseLookup(
            clients.resource("dynamodb").Table(config.lease_table_name),
            sleep=sleep,
        )
        self.sts = sts or STS(clients.client("sts"), sleep=sleep)
        self.stack_manager_factory = stack_manager_factory or (
            lambda session, account_id, deadline: StackManager(
                session, config.deploy_region, account_id=account_id,
                sleep=sleep, deadline=deadline,
            )
        )
        self.bootstrapper_factory = bootstrapper_factory or (
            lambda session, account_id, deadline: CdkBootstrapper(
                session, config.deploy_region, account_id=account_id,
                sleep=sleep, deadline=deadline,
            )
        )

    def run(self, lease_event, deadline=None):
        """
        Runs the deployment for a raw lease approval event and returns an
        OrchestrationResult. Expected failures are reported as FAILED
        results after a 'Deployment Failed' event has been published.

        Every wait and subprocess is bounded by deadline, which defaults
        to the Lambda limit less a margin for reporting the outcome.
        """
        deadline = deadline or Deadline.default()
        context = {"lease_id": UNKNOWN, "account_id": UNKNOWN}
        started = self.metrics.start_timer()
        try:
            return self._run(lease_event, context, deadline)
        except (DeployerError, ClientError, BotoCoreError) as error:
            return self._fail(error, context)
        except Exception as error:
            LOGGER.exception(
                "Unexpected error deploying lease %s", context["lease_id"],
            )
            self._fail(error, context)
            raise
        finally:
            self.metrics.record_duration(
                MetricName.INVOCATION_DURATION, started,
            )
            self.metrics.flush()

    def _fail(self, error, context):
        LOGGER.error(
            "Deployment for lease %s failed: %s: %s",
            context["lease_id"],
            type(error).__name__,
            error,
        )
        self.metrics.record_count(
            MetricName.DEPLOYMENT_FAILURE,
            dimensions={"ErrorType": type(error).__name__},
        )
        self.events.deployment_failed(
            context["lease_id"],
            context["account_id"],
            error,
            stack_name=context.get("stack_name"),
            template_name=context.get("template_name"),
        )
        return OrchestrationResult(
            status=OrchestrationStatus.FAILED,
            lease_id=context["lease_id"],
            stack_name=context.get("stack_name"),
            error=error,
        )

    def _run(self, lease_event, context, deadline):
        event = parse_lease_event(lease_event)
        context["lease_id"] = event.lease_id
        LOGGER.info(
            "Lease %s approved for %s", event.lease_id, event.user_email,
        )

        lease = self.lease_lookup.lookup(event.user_email, event.lease_id)
        context["account_id"] = lease.account_id
        validate_account_id(lease.account_id)
        validate_region(self.config.deploy_region)

        reference = event.template_name or lease.template_name
        if not reference:
            LOGGER.info(
                "Lease %s has no template configured, skipping deployment",
                event.lease_id,
            )
            return OrchestrationResult(
                status=OrchestrationStatus.SKIPPED,
                lease_id=event.lease_id,
                reason=NO_TEMPLATE_CONFIGURED,
            )
        context["template_name"] = reference

        with self.metrics.timed(
                MetricName.TEMPLATE_RESOLUTION_DURATION,
                failure=MetricName.TEMPLATE_RESOLUTION_FAILURE,
        ):
            resolved = self.resolver.resolve(
                reference,
                lease.account_id,
                self.config.deploy_region,
                deadline=deadline,
            )
        if resolved is None:
            LOGGER.info(
                "Template %s not found for lease %s, skipping deployment",
                reference,
                event.lease_id,
            )
            return OrchestrationResult(
                status=OrchestrationStatus.SKIPPED,
                lease_id=event.lease_id,
                reason=TEMPLATE_NOT_FOUND,
            )
        self.metrics.record_count(MetricName.TEMPLATE_RESOLUTION_SUCCESS)

        validated = validate_template(resolved.template_body)
        LOGGER.info(
            "Template %s validated with %d parameters",
            resolved.template_name,
            len(validated.parameters),
        )

        session = self.sts.assume_target_account_role(
            lease.account_id,
            self.config.target_role_name,
            session_name=DEFAULT_SESSION_NAME,
            intermediate_role_arn=self.config.intermediate_role_arn,
        )

        identity = StackIdentity.for_lease(resolved.template_name, event.lease_id)
        stack_name = identity.stack_name
        context["stack_name"] = stack_name

        if resolved.synthesized:
            with self.metrics.timed(MetricName.CDK_BOOTSTRAP_DURATION):
                self.bootstrapper_factory(
                    session, lease.account_id, deadline,
                ).ensure_bootstrapped(lease.account_id)

        with self.metrics.timed(MetricName.DEPLOYMENT_DURATION):
            outcome = deploy_with_parameters(
                self.stack_manager_factory(session, lease.account_id, deadline),
                stack_name,
                resolved.template_body,
                validated.parameters,
                replace(lease, template_name=resolved.template_name),
                tags=build_stack_tags(identity.lease_id, identity.template_name),
            )
        self.metrics.record_count(STACK_ACTION_METRICS[outcome.action])
        LOGGER.info(
            "Deployment of %s for lease %s completed: %s",
            stack_name,
            event.lease_id,
            outcome.action.value,
        )

        self.metrics.record_count(MetricName.DEPLOYMENT_SUCCESS)
        self.events.deployment_succeeded(
            event.lease_id,
            lease.account_id,
            stack_name,
            outcome.stack_id,
            outcome.action,
            template_name=resolved.template_name,
        )
        return OrchestrationResult(
            status=OrchestrationStatus.DEPLOYED,
            lease_id=event.lease_id,
            stack_name=stack_name,
            outcome=outcome,
        )
