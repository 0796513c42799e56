# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Parses CloudFormation templates written in YAML or JSON and extracts the
names of the parameters they declare.
"""

from collections import namedtuple

import yaml

from isb_deployer.errors import TemplateValidationError

ValidatedTemplate = namedtuple("ValidatedTemplate", ["template", "parameters"])


class CloudFormationLoader(yaml.SafeLoader):  # pylint: disable=too-many-ancestors
    """SafeLoader that understands the short form intrinsic function tags
    """


def _construct_intrinsic(loader, tag_suffix, node):
    # !GetAtt Resource.Attribute is shorthand for a two element list.
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
        if tag_suffix == "GetAtt" and isinstance(value, str):
            value = value.split(".", 1)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    key = tag_suffix if tag_suffix in ("Ref", "Condition") else f"Fn::{tag_suffix}"
    return {key: value}


CloudFormationLoader.add_multi_constructor("!", _construct_intrinsic)


def validate_template(body):
    """
    Returns a ValidatedTemplate with the parsed template and its parameter
    names, in declaration order.

    JSON templates are valid YAML, so both go through the same loader.
    """
    if not body or not body.strip():
        raise TemplateValidationError("Template content cannot be empty")

    try:
        template = yaml.load(body, Loader=CloudFormationLoader)  # nosec B506
    except yaml.YAMLError as error:
        raise TemplateValidationError(
            f"Failed to parse template: {error}",
        ) from error

    if template is None:
        raise TemplateValidationError(
            "Template is empty or contains only comments",
        )
    if not isinstance(template, dict):
        raise TemplateValidationError(
            "Template must be a mapping, got "
            f"{type(template).__name__}",
        )
    if "AWSTemplateFormatVersion" not in template and "Resources" not in template:
        raise TemplateValidationError(
            "Template must contain either AWSTemplateFormatVersion or "
            "Resources section",
        )

    parameters = template.get("Parameters")
    if parameters is None:
        return ValidatedTemplate(template=template, parameters=[])
    if not isinstance(parameters, dict):
        raise TemplateValidationError("Parameters section must be a mapping")
    return ValidatedTemplate(template=template, parameters=list(parameters))
