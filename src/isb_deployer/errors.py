# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
A collection of all Error Types used in the ISB Deployer
"""

from enum import Enum


class ErrorCode(str, Enum):
    CONFIG_INVALID = "CONFIG_INVALID"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    GITHUB_RATE_LIMITED = "GITHUB_RATE_LIMITED"
    GITHUB_NOT_FOUND = "GITHUB_NOT_FOUND"
    GITHUB_FORBIDDEN = "GITHUB_FORBIDDEN"
    GITHUB_API_ERROR = "GITHUB_API_ERROR"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    TEMPLATE_INVALID = "TEMPLATE_INVALID"
    TEMPLATE_RESOLUTION_FAILED = "TEMPLATE_RESOLUTION_FAILED"
    CDK_SYNTHESIS_FAILED = "CDK_SYNTHESIS_FAILED"
    CDK_BOOTSTRAP_FAILED = "CDK_BOOTSTRAP_FAILED"
    SCENARIO_FETCH_FAILED = "SCENARIO_FETCH_FAILED"
    CLOUDFORMATION_FAILED = "CLOUDFORMATION_FAILED"
    STS_ASSUME_ROLE_FAILED = "STS_ASSUME_ROLE_FAILED"
    LEASE_LOOKUP_FAILED = "LEASE_LOOKUP_FAILED"
    AWS_API_ERROR = "AWS_API_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class FailureCategory(str, Enum):
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    PERMISSION = "permission"
    RESOURCE = "resource"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class DeployerError(Exception):
    """
    Base class for exceptions raised by the deployer.

    Every error carries an ErrorCode, a FailureCategory and whether the
    operation that raised it may be retried.
    """

    default_code = ErrorCode.UNKNOWN_ERROR
    category = FailureCategory.UNKNOWN

    def __init__(self, message, code=None, retryable=False, cause=None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.retryable = retryable
        self.cause = cause


class ConfigurationError(DeployerError):
    """
    Raised when a required setting is missing or malformed
    """

    default_code = ErrorCode.CONFIG_INVALID
    category = FailureCategory.CONFIGURATION


class ValidationError(DeployerError):
    """
    Raised when user or event supplied input fails validation
    """

    default_code = ErrorCode.VALIDATION_ERROR
    category = FailureCategory.VALIDATION

    def __init__(self, message, field=None, cause=None):
        super().__init__(message, cause=cause)
        self.field = field


class TemplateRefParseError(ValidationError):
    """
    Raised when a 'name[@branch]' scenario reference is malformed
    """


class StackNameError(ValidationError):
    """
    Raised when no valid stack name can be derived from the inputs
    """


class EventValidationError(ValidationError):
    """
    Raised when the incoming lease approval event is malformed
    """


class TemplateValidationError(ValidationError):
    """
    Raised when a template body cannot be parsed as a CloudFormation template
    """

    default_code = ErrorCode.TEMPLATE_INVALID


class GitHubApiError(DeployerError):
    """
    Raised when the GitHub API returns an unexpected response
    """

    default_code = ErrorCode.GITHUB_API_ERROR
    category = FailureCategory.NETWORK

    def __init__(self, message, status_code=None, retryable=False, code=None):
        super().__init__(message, code=code, retryable=retryable)
        self.status_code = status_code


class GitHubForbiddenError(GitHubApiError):
    """
    Raised when the GitHub API refuses access to the repository
    """

    default_code = ErrorCode.GITHUB_FORBIDDEN
    category = FailureCategory.PERMISSION

    def __init__(self, message):
        super().__init__(message, status_code=403)


class GitHubRateLimitError(GitHubApiError):
    """
    Raised when the GitHub API rate limit is exhausted. The caller decides
    whether to defer until reset_time or give up.
    """

    default_code = ErrorCode.GITHUB_RATE_LIMITED
    category = FailureCategory.PERMISSION

    def __init__(self, message, reset_time=None):
        super().__init__(message, status_code=403)
        self.reset_time = reset_time


class GitHubNotFoundError(GitHubApiError):
    """
    Raised when the scenario folder does not exist in the repository.
    This is an expected outcome for leases without a scenario.
    """

    default_code = ErrorCode.GITHUB_NOT_FOUND
    category = FailureCategory.NOT_FOUND

    def __init__(self, message):
        super().__init__(message, status_code=404)


class TemplateFetchError(DeployerError):
    """
    Raised when the raw template file cannot be downloaded
    """

    default_code = ErrorCode.TEMPLATE_NOT_FOUND
    category = FailureCategory.NETWORK

    def __init__(self, message, status_code=None, url=None, retryable=False):
        super().__init__(message, retryable=retryable)
        self.status_code = status_code
        self.url = url


class ScenarioFetchError(DeployerError):
    """
    Raised when the scenario folder cannot be cloned from the repository
    """

    default_code = ErrorCode.SCENARIO_FETCH_FAILED
    category = FailureCategory.UNKNOWN


class FetchAuthenticationError(ScenarioFetchError):
    """
    Raised when git rejects the configured credentials. Never carries
    any remote output.
    """

    category = FailureCategory.PERMISSION


class FetchTimeoutError(ScenarioFetchError):
    """
    Raised when the git invocation exceeds its wall-clock timeout
    """

    category = FailureCategory.NETWORK


class CdkSynthesisError(DeployerError):
    """
    Raised when a CDK project cannot be synthesized into a template
    """

    default_code = ErrorCode.CDK_SYNTHESIS_FAILED
    category = FailureCategory.VALIDATION

    def __init__(self, message, stderr=None, cause=None):
        super().__init__(message, cause=cause)
        self.stderr = stderr


class BootstrapFailedError(DeployerError):
    """
    Raised when the CDKToolkit stack ends in a failed state
    """

    default_code = ErrorCode.CDK_BOOTSTRAP_FAILED
    category = FailureCategory.RESOURCE


class BootstrapTimeoutError(BootstrapFailedError):
    """
    Raised when the CDKToolkit stack does not stabilize in time
    """

    category = FailureCategory.NETWORK


class StackDeploymentError(DeployerError):
    """
    Raised when the target stack cannot be created or updated
    """

    default_code = ErrorCode.CLOUDFORMATION_FAILED
    category = FailureCategory.RESOURCE

    def __init__(self, message, stack_name=None, status=None,
                 provider_code=None, cause=None):
        super().__init__(message, cause=cause)
        self.stack_name = stack_name
        self.status = status
        self.provider_code = provider_code


class StackTimeoutError(StackDeploymentError):
    """
    Raised when the target stack does not reach a terminal state in time
    """

    category = FailureCategory.NETWORK


class TransientProviderError(DeployerError):
    """
    Raised for throttling and other transient AWS API failures
    """

    default_code = ErrorCode.AWS_API_ERROR
    category = FailureCategory.NETWORK

    def __init__(self, message, provider_code=None, cause=None):
        super().__init__(message, retryable=True, cause=cause)
        self.provider_code = provider_code


class RoleAssumptionError(DeployerError):
    """
    Raised when the target account role cannot be assumed
    """

    default_code = ErrorCode.STS_ASSUME_ROLE_FAILED
    category = FailureCategory.PERMISSION


class LeaseLookupError(DeployerError):
    """
    Raised when the lease record cannot be read
    """

    default_code = ErrorCode.LEASE_LOOKUP_FAILED
    category = FailureCategory.UNKNOWN


class LeaseNotFoundError(LeaseLookupError):
    """
    Raised when no lease record exists for the event
    """

    category = FailureCategory.RESOURCE


class TemplateResolutionError(DeployerError):
    """
    Raised when a scenario reference cannot be turned into a template body
    """

    default_code = ErrorCode.TEMPLATE_RESOLUTION_FAILED


class ParameterNotFoundError(DeployerError):
    """
    Parameter not found in Parameter Store
    """

    category = FailureCategory.NOT_FOUND
