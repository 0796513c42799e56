# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Parses scenario references of the form 'name' or 'name@branch'.

The name ends up in GitHub URLs, local file system paths and stack names,
the branch in git arguments and API query strings. Both are validated
here before either is used.
"""

import re
from dataclasses import dataclass

from isb_deployer.errors import TemplateRefParseError

TEMPLATE_NAME_REGEX = re.compile(r"\A[A-Za-z0-9][A-Za-z0-9._-]*\Z")
MAX_TEMPLATE_NAME_LENGTH = 100
BRANCH_NAME_REGEX = re.compile(
    r"\A(?:[A-Za-z0-9][A-Za-z0-9._/-]*[A-Za-z0-9]|[A-Za-z0-9])\Z"
)
MAX_BRANCH_NAME_LENGTH = 256


@dataclass(frozen=True)
class TemplateRef:
    name: str
    branch: str = None


def validate_template_name(name):
    if not name or not name.strip():
        raise TemplateRefParseError(
            "Template name cannot be empty",
            field="name",
        )
    if len(name) > MAX_TEMPLATE_NAME_LENGTH:
        raise TemplateRefParseError(
            f"Template name too long (max {MAX_TEMPLATE_NAME_LENGTH} "
            "characters)",
            field="name",
        )
    if not TEMPLATE_NAME_REGEX.match(name):
        raise TemplateRefParseError(
            f"Invalid template name: {name!r}. Must start with an "
            "alphanumeric character and contain only alphanumeric "
            "characters, dots, dashes and underscores.",
            field="name",
        )
    return name


def validate_branch_name(branch):
    if not branch:
        raise TemplateRefParseError(
            "Branch name cannot be empty",
            field="branch",
        )
    if len(branch) > MAX_BRANCH_NAME_LENGTH:
        raise TemplateRefParseError(
            f"Branch name too long (max {MAX_BRANCH_NAME_LENGTH} characters)",
            field="branch",
        )
    if not BRANCH_NAME_REGEX.match(branch):
        raise TemplateRefParseError(
            f"Invalid branch name: {branch!r}. Must contain only "
            "alphanumeric characters, dots, dashes, underscores and slashes.",
            field="branch",
        )
    if ".." in branch or "//" in branch:
        raise TemplateRefParseError(
            f"Invalid branch name: {branch!r}. Cannot contain consecutive "
            "dots or slashes.",
            field="branch",
        )
    if branch.endswith(".lock"):
        raise TemplateRefParseError(
            f"Invalid branch name: {branch!r}. Cannot end with .lock.",
            field="branch",
        )
    return branch


def parse_template_ref(text):
    """
    Splits text on the first '@' into a TemplateRef.

    parse_template_ref('localgov-drupal')
        -> TemplateRef(name='localgov-drupal', branch=None)
    parse_template_ref('my-app@feature/new-feature')
        -> TemplateRef(name='my-app', branch='feature/new-feature')

    A second '@' stays in the branch candidate, which then fails
    branch validation.
    """
    if not text or not text.strip():
        raise TemplateRefParseError("Template reference cannot be empty")

    name, separator, branch = text.partition("@")
    if not separator:
        return TemplateRef(name=validate_template_name(text))
    if not name:
        raise TemplateRefParseError(
            "Invalid template reference: cannot start with @",
        )
    if not branch:
        raise TemplateRefParseError(
            "Invalid template reference: branch name cannot be empty after @",
        )
    return TemplateRef(
        name=validate_template_name(name),
        branch=validate_branch_name(branch),
    )


def resolve_effective_branch(ref, default_branch):
    if ref.branch is not None:
        return ref.branch
    return default_branch
