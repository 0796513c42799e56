# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Classifies a scenario folder as a plain CloudFormation template, a CDK
project at the folder root or a CDK project in a 'cdk' subfolder, based on
the GitHub contents API listing of that folder.
"""

import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from urllib.error import URLError
from urllib.request import urlopen

from isb_deployer import github
from isb_deployer.errors import (
    GitHubApiError,
    GitHubForbiddenError,
    GitHubNotFoundError,
    GitHubRateLimitError,
)
from isb_deployer.logger import configure_logger
from isb_deployer.template_ref import validate_branch_name

LOGGER = configure_logger(__name__)

CDK_CONFIG_FILE = "cdk.json"
CDK_SUBFOLDER = "cdk"


class ScenarioType(str, Enum):
    CLOUDFORMATION = "cloudformation"
    CDK = "cdk"
    CDK_SUBFOLDER = "cdk-subfolder"


@dataclass(frozen=True)
class ScenarioClassification:
    scenario_type: ScenarioType
    cdk_path: str = None

    @property
    def is_cdk(self):
        return self.scenario_type in (ScenarioType.CDK, ScenarioType.CDK_SUBFOLDER)


def _contains(listing, name, item_type):
    return any(
        item.get("name") == name and item.get("type") == item_type
        for item in listing
        if isinstance(item, dict)
    )


def _header(headers, name):
    if headers is None:
        return None
    return headers.get(name)


class ScenarioDetector:
    def __init__(self, repository, path, token_provider=None, opener=urlopen,
                 timeout=github.API_TIMEOUT):
        self.repository = repository
        self.path = path
        self.token_provider = token_provider
        self.opener = opener
        self.timeout = timeout

    def _token(self):
        return self.token_provider() if self.token_provider else None

    def _list(self, url, headers):
        try:
            return github.http_get(
                url,
                headers=headers,
                timeout=self.timeout,
                opener=self.opener,
            )
        except (URLError, socket.timeout) as error:
            raise GitHubApiError(
                f"GitHub API request failed: {getattr(error, 'reason', error)}",
                retryable=True,
            ) from error

    def detect(self, template_name, branch):
        """
        Returns the ScenarioClassification of template_name on branch.

        Raises GitHubRateLimitError, GitHubForbiddenError or
        GitHubNotFoundError for the corresponding 403 and 404 responses,
        and GitHubApiError for any other failure.
        """
        validate_branch_name(branch)
        headers = github.api_headers(self._token())
        url = github.build_contents_url(
            self.repository, self.path, template_name, branch,
        )
        response = self._list(url, headers)

        if response.status == 403:
            if _header(response.headers, "x-ratelimit-remaining") == "0":
                reset = _header(response.headers, "x-ratelimit-reset")
                reset_time = (
                    datetime.fromtimestamp(int(reset), tz=timezone.utc)
                    if reset and reset.isdigit() else None
                )
                raise GitHubRateLimitError(
                    "GitHub API rate limit exceeded. Resets at "
                    f"{reset_time.isoformat() if reset_time else 'unknown'}",
                    reset_time=reset_time,
                )
            raise GitHubForbiddenError("GitHub API forbidden")
        if response.status == 404:
            raise GitHubNotFoundError(
                f"Scenario '{template_name}' not found in repository",
            )
        if not 200 <= response.status < 300:
            raise GitHubApiError(
                f"GitHub API error: {response.status}",
                status_code=response.status,
                retryable=response.status >= 500,
            )

        listing = github.decode_json(response.body)
        if not isinstance(listing, list):
            raise GitHubApiError(
                f"Scenario '{template_name}' is not a folder",
                status_code=response.status,
            )

        if _contains(listing, CDK_CONFIG_FILE, "file"):
            return ScenarioClassification(ScenarioType.CDK, cdk_path="")

        if _contains(listing, CDK_SUBFOLDER, "dir"):
            subfolder = self._list(
                github.build_contents_url(
                    self.repository, self.path, template_name, branch,
                    subpath=CDK_SUBFOLDER,
                ),
                headers,
            )
            if 200 <= subfolder.status < 300 and _contains(
                github.decode_json(subfolder.body), CDK_CONFIG_FILE, "file",
            ):
                return ScenarioClassification(
                    ScenarioType.CDK_SUBFOLDER, cdk_path=CDK_SUBFOLDER,
                )
            LOGGER.debug(
                "Scenario %s has a cdk folder without %s (status %s)",
                template_name,
                CDK_CONFIG_FILE,
                subfolder.status,
            )

        return ScenarioClassification(ScenarioType.CLOUDFORMATION)
