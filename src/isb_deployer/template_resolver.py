# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Turns a scenario reference into a deployable template body.

Plain scenarios are downloaded as template.yaml from the raw content host,
CDK scenarios are cloned and synthesized.
"""

import time
from dataclasses import dataclass
from enum import Enum
from urllib.request import urlopen

from isb_deployer import github
from isb_deployer.errors import (
    DeployerError,
    GitHubNotFoundError,
    GitHubRateLimitError,
    TemplateFetchError,
    TemplateResolutionError,
)
from isb_deployer.logger import configure_logger
from isb_deployer.metrics import DeployerMetrics, MetricName
from isb_deployer.retry import DEFAULT_RETRY_POLICY, with_retry
from isb_deployer.template_ref import parse_template_ref, resolve_effective_branch

LOGGER = configure_logger(__name__)


class TemplateSource(str, Enum):
    CLOUDFORMATION = "cloudformation"
    CDK = "cdk"


@dataclass(frozen=True)
class ResolvedTemplate:
    template_body: str
    source: TemplateSource
    template_name: str
    branch: str

    @property
    def synthesized(self):
        return self.source == TemplateSource.CDK


class TemplateResolver:
    def __init__(self, config, detector, fetcher, synthesizer, opener=urlopen,
                 retry_policy=DEFAULT_RETRY_POLICY, sleep=time.sleep,
                 metrics=None):
        self.config = config
        self.detector = detector
        self.fetcher = fetcher
        self.synthesizer = synthesizer
        self.opener = opener
        self.retry_policy = retry_policy
        self.sleep = sleep
        self.metrics = metrics or DeployerMetrics(None, config.metrics_namespace)

    def _retry(self, operation):
        return with_retry(operation, self.retry_policy, sleep=self.sleep)

    def resolve(self, reference, account_id=None, region=None, deadline=None):
        """
        Returns the ResolvedTemplate for reference ('name' or
        'name@branch'), or None when the scenario or its template file
        does not exist on the branch. CDK fetch and synthesis are bounded
        by the time left before deadline.
        """
        ref = parse_template_ref(reference)
        branch = resolve_effective_branch(ref, self.config.github_branch)
        LOGGER.info(
            "Resolving template %s on branch %s%s",
            ref.name,
            branch,
            " (override)" if ref.branch is not None else "",
        )

        try:
            with self.metrics.timed(MetricName.GITHUB_API_DURATION):
                classification = self._retry(
                    lambda: self.detector.detect(ref.name, branch)
                )
            LOGGER.info(
                "Scenario %s detected as %s",
                ref.name,
                classification.scenario_type.value,
            )
            if classification.is_cdk:
                return self._resolve_cdk(
                    ref.name, branch, classification.cdk_path,
                    account_id, region, deadline,
                )
            return self._resolve_cloudformation(ref.name, branch)
        except GitHubNotFoundError:
            self.metrics.record_count(MetricName.TEMPLATE_NOT_FOUND)
            LOGGER.info(
                "Template %s not found in repository on branch %s",
                ref.name,
                branch,
            )
            return None
        except TemplateFetchError as error:
            if error.status_code == 404:
                self.metrics.record_count(MetricName.TEMPLATE_NOT_FOUND)
                LOGGER.info(
                    "CloudFormation template file for %s not found on "
                    "branch %s",
                    ref.name,
                    branch,
                )
                return None
            raise
        except GitHubRateLimitError:
            self.metrics.record_count(MetricName.GITHUB_RATE_LIMITED)
            raise
        except DeployerError:
            raise
        except (OSError, ValueError) as error:
            raise TemplateResolutionError(
                f"Failed to resolve template '{ref.name}@{branch}': {error}",
                cause=error,
            ) from error

    def _resolve_cloudformation(self, template_name, branch):
        url = github.build_template_url(
            self.config.github_repo,
            branch,
            self.config.github_path,
            template_name,
        )
        template_body = self._retry(
            lambda: github.fetch_template(url, opener=self.opener)
        )
        LOGGER.info(
            "Fetched CloudFormation template %s (%d bytes)",
            template_name,
            len(template_body),
        )
        return ResolvedTemplate(
            template_body=template_body,
            source=TemplateSource.CLOUDFORMATION,
            template_name=template_name,
            branch=branch,
        )

    def _resolve_cdk(self, template_name, branch, cdk_path, account_id,
                     region, deadline=None):
        started = self.metrics.start_timer()
        with self.fetcher.fetch(
                template_name, branch, cdk_path or "", deadline=deadline,
        ) as scenario:
            self.metrics.record_duration(MetricName.GIT_CLONE_DURATION, started)
            with self.metrics.timed(
                    MetricName.CDK_SYNTHESIS_DURATION,
                    success=MetricName.CDK_SYNTHESIS_SUCCESS,
                    failure=MetricName.CDK_SYNTHESIS_FAILURE,
            ):
                result = self.synthesizer.synthesize(
                    scenario.cdk_path, account_id, region, deadline=deadline,
                )
        return ResolvedTemplate(
            template_body=result.template_body,
            source=TemplateSource.CDK,
            template_name=template_name,
            branch=branch,
        )
