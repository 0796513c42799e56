# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
CDK synthesizer module used by the deployer

Installs the dependencies of a fetched CDK project and synthesizes it
into a single CloudFormation template. The CDK app never sees the
deployer's AWS credentials, only the target account and region.
"""

import glob
import os
import shutil
import subprocess
import tempfile
from collections import namedtuple

from isb_deployer.errors import CdkSynthesisError
from isb_deployer.logger import configure_logger, redact_secrets
from isb_deployer.retry import cap_to_deadline

LOGGER = configure_logger(__name__)

NPM_CI_TIMEOUT = 120
CDK_SYNTH_TIMEOUT = 120
MAX_STDERR_LENGTH = 2000
TEMPLATE_SUFFIX = ".template.json"
PASSTHROUGH_VARIABLES = ("PATH", "NODE_PATH", "LAMBDA_TASK_ROOT")

SynthesisResult = namedtuple("SynthesisResult", ["template_body", "stack_name"])


def _output_excerpt(result):
    output = result.stderr or result.stdout or b""
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    return redact_secrets(output.strip())[-MAX_STDERR_LENGTH:]


class CdkSynthesizer:
    def __init__(self, cdk_binary=None, npm_binary="npm",
                 npm_timeout=NPM_CI_TIMEOUT, synth_timeout=CDK_SYNTH_TIMEOUT,
                 scratch_root=None, runner=subprocess.run):
        self.cdk_binary = cdk_binary
        self.npm_binary = npm_binary
        self.npm_timeout = npm_timeout
        self.synth_timeout = synth_timeout
        self.scratch_root = scratch_root
        self.runner = runner

    def _environment(self, home, account_id=None, region=None):
        environment = {
            name: os.environ[name]
            for name in PASSTHROUGH_VARIABLES
            if os.environ.get(name)
        }
        environment["HOME"] = home
        environment["NPM_CONFIG_CACHE"] = os.path.join(home, ".npm")
        if account_id:
            environment["CDK_DEFAULT_ACCOUNT"] = account_id
        if region:
            environment["CDK_DEFAULT_REGION"] = region
            environment["AWS_REGION"] = region
            environment["AWS_DEFAULT_REGION"] = region
        return environment

    def _run(self, argv, cwd, environment, timeout, description,
             deadline=None):
        timeout = cap_to_deadline(timeout, deadline)
        if timeout <= 0:
            raise CdkSynthesisError(
                f"No time left in the invocation to run {description}",
            )
        LOGGER.debug("Running %s in %s", " ".join(argv), cwd)
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
            raise CdkSynthesisError(
                f"{description} timed out after {timeout:.0f} seconds",
            ) from None
        except FileNotFoundError as error:
            raise CdkSynthesisError(
                f"{description} failed: executable {argv[0]} not found",
                cause=error,
            ) from error

        if result.returncode != 0:
            stderr = _output_excerpt(result)
            raise CdkSynthesisError(
                f"{description} failed (exit {result.returncode})",
                stderr=stderr,
            )
        return result

    def _cdk_command(self, cdk_path):
        if self.cdk_binary:
            return self.cdk_binary
        local_cdk = os.path.join(cdk_path, "node_modules", ".bin", "cdk")
        return local_cdk if os.path.exists(local_cdk) else "cdk"

    def synthesize(self, cdk_path, account_id=None, region=None,
                   deadline=None):
        """
        Returns the SynthesisResult of the CDK app in cdk_path. npm and
        cdk are each bounded by their own timeout and the time left
        before deadline.

        Raises CdkSynthesisError when dependencies cannot be installed,
        synthesis fails or does not produce exactly one stack template.
        """
        if not os.path.isfile(os.path.join(cdk_path, "cdk.json")):
            raise CdkSynthesisError(f"No cdk.json found in {cdk_path}")

        scratch = tempfile.mkdtemp(prefix="cdk-synth-", dir=self.scratch_root)
        try:
            environment = self._environment(scratch, account_id, region)
            if os.path.isfile(os.path.join(cdk_path, "package.json")):
                LOGGER.info("Installing CDK project dependencies in %s", cdk_path)
                self._run(
                    [self.npm_binary, "ci", "--ignore-scripts", "--no-audit",
                     "--no-fund"],
                    cdk_path,
                    environment,
                    self.npm_timeout,
                    "npm ci",
                    deadline=deadline,
                )

            output_dir = os.path.join(scratch, "cdk.out")
            LOGGER.info(
                "Synthesizing CDK project in %s for %s in %s",
                cdk_path,
                account_id,
                region,
            )
            self._run(
                [self._cdk_command(cdk_path), "synth", "--quiet",
                 "--output", output_dir],
                cdk_path,
                environment,
                self.synth_timeout,
                "cdk synth",
                deadline=deadline,
            )
            return self._read_template(output_dir)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    @staticmethod
    def _read_template(output_dir):
        templates = sorted(
            glob.glob(os.path.join(output_dir, f"*{TEMPLATE_SUFFIX}"))
        )
        if not templates:
            raise CdkSynthesisError(
                "No template.json found in cdk.out. Ensure the CDK app "
                "produces a single stack.",
            )
        if len(templates) > 1:
            names = ", ".join(os.path.basename(path) for path in templates)
            raise CdkSynthesisError(
                f"Multiple stacks detected ({len(templates)}). Only single "
                f"stack CDK apps are supported. Found: {names}",
            )
        with open(templates[0], "r", encoding="utf-8") as template_file:
            template_body = template_file.read()
        stack_name = os.path.basename(templates[0])[:-len(TEMPLATE_SUFFIX)]
        LOGGER.info(
            "Synthesized stack %s (%d bytes)", stack_name, len(template_body),
        )
        return SynthesisResult(template_body=template_body, stack_name=stack_name)
