# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Derives CloudFormation stack names from a template name and a lease id.

Names look like isb-{template}-{lease} and match [a-zA-Z][-a-zA-Z0-9]*.
"""

import re
from dataclasses import dataclass

from isb_deployer.errors import StackNameError

STACK_NAME_MAX_LENGTH = 128
STACK_NAME_PREFIX = "isb"
STACK_NAME_REGEX = re.compile(r"\A[a-zA-Z][-a-zA-Z0-9]*\Z")
# A stack name can contain only alphanumeric characters (case sensitive)
# and hyphens.
CFN_UNACCEPTED_CHARS = re.compile(r"[^-a-zA-Z0-9]")


def sanitize_for_stack_name(text):
    """
    sanitize_for_stack_name('my_template.yaml') == 'my-template-yaml'
    sanitize_for_stack_name('123-invalid') == 'invalid'
    """
    if not text or not text.strip():
        raise StackNameError("Input string cannot be empty or null")

    sanitized = re.sub(r"[_.]", "-", text)
    sanitized = CFN_UNACCEPTED_CHARS.sub("", sanitized)
    sanitized = re.sub(r"\A[-0-9]+", "", sanitized)
    sanitized = re.sub(r"-+", "-", sanitized)
    sanitized = sanitized.rstrip("-")

    if not sanitized:
        raise StackNameError(
            f"Input string {text!r} contains no valid characters after "
            "sanitization",
        )
    return sanitized


def generate_stack_name(template_name, lease_id):
    """
    Builds isb-{template}-{lease}. When the result is too long only the
    template segment is truncated, the lease segment is kept whole.
    """
    if not template_name or not template_name.strip():
        raise StackNameError("Template name cannot be empty or null")
    if not lease_id or not str(lease_id).strip():
        raise StackNameError("Lease ID cannot be empty or null")

    template_segment = sanitize_for_stack_name(template_name)
    lease_segment = sanitize_for_stack_name(str(lease_id))

    stack_name = f"{STACK_NAME_PREFIX}-{template_segment}-{lease_segment}"
    if len(stack_name) > STACK_NAME_MAX_LENGTH:
        available = STACK_NAME_MAX_LENGTH - (
            len(STACK_NAME_PREFIX) + len(lease_segment) + 2
        )
        if available <= 0:
            raise StackNameError(
                f"Lease ID {lease_id!r} is too long for a stack name of at "
                f"most {STACK_NAME_MAX_LENGTH} characters",
            )
        stack_name = (
            f"{STACK_NAME_PREFIX}-{template_segment[:available]}-"
            f"{lease_segment}"
        )

    if not STACK_NAME_REGEX.match(stack_name):
        raise StackNameError(
            f"Generated stack name {stack_name!r} must match "
            "[a-zA-Z][-a-zA-Z0-9]*",
        )
    return stack_name


@dataclass(frozen=True)
class StackIdentity:
    """
    The stack a lease's scenario is deployed to. The same template name
    and lease id always give the same stack name, which is what makes
    repeated deliveries of one approval event idempotent.
    """

    stack_name: str
    lease_id: str
    template_name: str

    @classmethod
    def for_lease(cls, template_name, lease_id):
        return cls(
            stack_name=generate_stack_name(template_name, lease_id),
            lease_id=lease_id,
            template_name=template_name,
        )
