# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Scenario fetcher module used by the deployer

Sparse clones a single scenario folder from the scenario repository into
a private scratch directory. git is always spawned with a fixed argument
vector, without a shell, with a minimal environment and a hard timeout.
The GitHub token only ever reaches git through a GIT_ASKPASS helper
script that lives for the duration of the git calls.
"""

import os
import shlex
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass

from isb_deployer import github
from isb_deployer.errors import (
    FetchAuthenticationError,
    FetchTimeoutError,
    ScenarioFetchError,
    ValidationError,
)
from isb_deployer.logger import configure_logger, redact_secrets
from isb_deployer.retry import cap_to_deadline
from isb_deployer.template_ref import validate_branch_name

LOGGER = configure_logger(__name__)

GIT_TIMEOUT = 30
MAX_NAME_LENGTH = 100
MAX_ERROR_OUTPUT = 500
SHELL_METACHARACTERS = frozenset(";&|`$()*?[]~^<>'\"")
AUTHENTICATION_FAILURE_MARKERS = (
    "Authentication failed",
    "could not read Username",
    "could not read Password",
    "terminal prompts disabled",
    "Invalid username or password",
)
ASKPASS_SCRIPT = """#!/bin/sh
case "$1" in
  Username*) echo x-access-token ;;
  *) printf '%s\\n' {token} ;;
esac
"""


@dataclass(frozen=True)
class FetchedScenario:
    local_path: str
    scenario_path: str
    cdk_path: str


def validate_scenario_name(name, field="template_name"):
    """
    Rejects names that could escape the scratch directory or be
    interpreted by a shell. Runs before any process is spawned.
    """
    if not name:
        raise ValidationError("Scenario name cannot be empty", field=field)
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"Scenario name too long (max {MAX_NAME_LENGTH} characters)",
            field=field,
        )
    if ".." in name or "/" in name or "\\" in name:
        raise ValidationError(
            f"Scenario name {name!r} must not contain path separators or '..'",
            field=field,
        )
    if any(char.isspace() for char in name):
        raise ValidationError(
            f"Scenario name {name!r} must not contain whitespace",
            field=field,
        )
    if SHELL_METACHARACTERS.intersection(name):
        raise ValidationError(
            f"Scenario name {name!r} must not contain shell metacharacters",
            field=field,
        )
    return name


def _remove_tree(path):
    if not path or not os.path.exists(path):
        return
    try:
        shutil.rmtree(path)
    except OSError as error:
        LOGGER.warning("Failed to clean up %s: %s", path, error)


def _write_askpass_helper(directory, token):
    helper_path = os.path.join(directory, "askpass.sh")
    descriptor = os.open(
        helper_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o700,
    )
    with os.fdopen(descriptor, "w") as helper:
        helper.write(ASKPASS_SCRIPT.format(token=shlex.quote(token)))
    return helper_path


class ScenarioFetcher:
    def __init__(self, repository, path, token_provider=None,
                 workspace_root=None, git_binary="git", timeout=GIT_TIMEOUT,
                 runner=subprocess.run):
        self.repository = repository
        self.path = path
        self.token_provider = token_provider
        self.workspace_root = workspace_root
        self.git_binary = git_binary
        self.timeout = timeout
        self.runner = runner

    def _environment(self, home, askpass=None):
        environment = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": home,
            "GIT_TERMINAL_PROMPT": "0",
            "GIT_CONFIG_NOSYSTEM": "1",
        }
        if askpass:
            environment["GIT_ASKPASS"] = askpass
        return environment

    def _git(self, args, environment, cwd=None, deadline=None):
        timeout = cap_to_deadline(self.timeout, deadline)
        if timeout <= 0:
            raise FetchTimeoutError(
                f"No time left in the invocation to run git {args[0]}",
            )
        argv = [self.git_binary, *args]
        LOGGER.debug("Running %s", redact_secrets(" ".join(argv)))
        try:
            result = self.runner(
                argv,
                cwd=cwd,
                env=environment,
                shell=False,
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise FetchTimeoutError(
                f"git {args[0]} timed out after {timeout:.0f} seconds",
            ) from None
        except FileNotFoundError as error:
            raise ScenarioFetchError(
                f"git executable not found: {self.git_binary}",
                cause=error,
            ) from error

        if result.returncode != 0:
            raise self._failure(args[0], result)
        return result

    def _failure(self, command, result):
        stderr = result.stderr
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", errors="replace")
        stderr = stderr or ""
        if any(marker in stderr for marker in AUTHENTICATION_FAILURE_MARKERS):
            return FetchAuthenticationError(
                "GitHub authentication failed. Check the configured GitHub "
                "token.",
            )
        if "Repository not found" in stderr:
            return ScenarioFetchError(
                f"Repository not found: {self.repository}",
            )
        excerpt = redact_secrets(stderr.strip())[:MAX_ERROR_OUTPUT]
        return ScenarioFetchError(
            f"git {command} failed (exit {result.returncode}): {excerpt}",
        )

    def _sparse_clone(self, branch, scenario_path, clone_path, environment,
                      deadline=None):
        self._git(
            [
                "clone", "--filter=blob:none", "--no-checkout",
                "--depth", "1", "--branch", branch, "--",
                github.build_clone_url(self.repository), clone_path,
            ],
            environment,
            deadline=deadline,
        )
        self._git(["sparse-checkout", "init", "--cone"], environment,
                  cwd=clone_path, deadline=deadline)
        self._git(["sparse-checkout", "set", scenario_path], environment,
                  cwd=clone_path, deadline=deadline)
        self._git(["checkout", branch], environment, cwd=clone_path,
                  deadline=deadline)

    @contextmanager
    def fetch(self, template_name, branch, cdk_subpath="", deadline=None):
        """
        Yields a FetchedScenario for template_name on branch. Every git
        call is bounded by the time left before deadline.

        The scratch directory is removed when the context exits, whether
        or not the body raised.
        """
        validate_scenario_name(template_name)
        if cdk_subpath:
            validate_scenario_name(cdk_subpath, field="cdk_subpath")
        validate_branch_name(branch)

        token = self.token_provider() if self.token_provider else None
        scenario_path = f"{self.path}/{template_name}"
        work_dir = tempfile.mkdtemp(
            prefix=f"{template_name}-", dir=self.workspace_root,
        )
        clone_path = os.path.join(work_dir, "repo")
        try:
            helper_dir = tempfile.mkdtemp(prefix="askpass-")
            try:
                askpass = (
                    _write_askpass_helper(helper_dir, token) if token else None
                )
                self._sparse_clone(
                    branch,
                    scenario_path,
                    clone_path,
                    self._environment(home=work_dir, askpass=askpass),
                    deadline=deadline,
                )
            finally:
                _remove_tree(helper_dir)

            _remove_tree(os.path.join(clone_path, ".git"))
            local_scenario = os.path.join(clone_path, scenario_path)
            cdk_path = (
                os.path.join(local_scenario, cdk_subpath)
                if cdk_subpath else local_scenario
            )
            if not os.path.isdir(cdk_path):
                raise ScenarioFetchError(
                    f"Scenario path {scenario_path}/{cdk_subpath or ''} does "
                    f"not exist on branch {branch}",
                )
            LOGGER.info(
                "Fetched scenario %s from %s@%s",
                template_name,
                self.repository,
                branch,
            )
            yield FetchedScenario(
                local_path=clone_path,
                scenario_path=local_scenario,
                cdk_path=cdk_path,
            )
        finally:
            _remove_tree(work_dir)
