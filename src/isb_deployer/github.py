# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
GitHub module used by the deployer
Builds repository URLs and performs the HTTP calls against the
contents API and raw.githubusercontent.com
"""

import json
import socket
from collections import namedtuple
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from isb_deployer.errors import TemplateFetchError
from isb_deployer.logger import configure_logger

LOGGER = configure_logger(__name__)

GITHUB_URL = "https://github.com"
GITHUB_API_URL = "https://api.github.com"
GITHUB_RAW_URL = "https://raw.githubusercontent.com"
USER_AGENT = "isb-deployer"
API_TIMEOUT = 10
RAW_FETCH_TIMEOUT = 5
TEMPLATE_FILE_NAME = "template.yaml"

HttpResponse = namedtuple("HttpResponse", ["status", "headers", "body"])


def build_clone_url(repository):
    return f"{GITHUB_URL}/{repository}.git"


def build_contents_url(repository, path, template_name, branch, subpath=None):
    url = (
        f"{GITHUB_API_URL}/repos/{repository}/contents/{path}/"
        f"{quote(template_name, safe='')}"
    )
    if subpath:
        url = f"{url}/{subpath}"
    return f"{url}?ref={quote(branch, safe='/')}"


def build_template_url(repository, branch, path, template_name):
    return "/".join([
        GITHUB_RAW_URL,
        repository,
        branch,
        path,
        quote(template_name, safe=""),
        TEMPLATE_FILE_NAME,
    ])


def api_headers(token=None):
    headers = {
        "Accept": "application/vnd.github.v3+json",
        "User-Agent": USER_AGENT,
    }
    if token:
        headers["Authorization"] = f"token {token}"
    return headers


def http_get(url, headers=None, timeout=API_TIMEOUT, opener=urlopen):
    """
    Performs a GET request and returns an HttpResponse for any HTTP
    status, including error statuses.

    Connection failures and timeouts raise URLError or socket.timeout.
    """
    request = Request(url, headers=headers or {}, method="GET")
    try:
        with opener(request, timeout=timeout) as response:
            return HttpResponse(
                status=response.status,
                headers=response.headers,
                body=response.read(),
            )
    except HTTPError as error:
        return HttpResponse(
            status=error.code,
            headers=error.headers,
            body=error.read() if error.fp else b"",
        )


def decode_json(body):
    return json.loads(body.decode("utf-8") if isinstance(body, bytes) else body)


def fetch_template(url, opener=urlopen, timeout=RAW_FETCH_TIMEOUT):
    """
    Downloads a raw template file and returns it as text.

    Raises TemplateFetchError carrying the HTTP status code on non-2xx
    responses. Timeouts and connection failures are raised as retryable
    TemplateFetchErrors without a status code.
    """
    LOGGER.debug("Fetching template from %s", url)
    try:
        response = http_get(
            url,
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            opener=opener,
        )
    except socket.timeout:
        raise TemplateFetchError(
            f"Request timed out after {int(timeout * 1000)}ms",
            url=url,
            retryable=True,
        ) from None
    except URLError as error:
        if isinstance(error.reason, socket.timeout):
            raise TemplateFetchError(
                f"Request timed out after {int(timeout * 1000)}ms",
                url=url,
                retryable=True,
            ) from None
        raise TemplateFetchError(
            f"Network error: {error.reason}",
            url=url,
            retryable=True,
        ) from error

    if not 200 <= response.status < 300:
        raise TemplateFetchError(
            f"HTTP {response.status} fetching template",
            status_code=response.status,
            url=url,
            retryable=response.status >= 500,
        )
    return response.body.decode("utf-8")
