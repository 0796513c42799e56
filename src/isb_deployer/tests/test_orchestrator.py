# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

# pylint: skip-file

import json

import boto3
from botocore.exceptions import ClientError
from botocore.stub import Stubber
from mock import ANY, Mock, patch
from pytest import fixture, raises

from isb_deployer.config import Config
from isb_deployer.cdk_bootstrapper import BOOTSTRAP_STACK_NAME, CdkBootstrapper
from isb_deployer.errors import (
    BootstrapTimeoutError,
    CdkSynthesisError,
    ConfigurationError,
    EventValidationError,
    LeaseNotFoundError,
    RoleAssumptionError,
    StackDeploymentError,
    StackTimeoutError,
    TemplateValidationError,
)
from isb_deployer.metrics import DeployerMetrics
from isb_deployer.orchestrator import (
    NO_TEMPLATE_CONFIGURED,
    TEMPLATE_NOT_FOUND,
    DeploymentOrchestrator,
    OrchestrationStatus,
    deploy_with_parameters,
)
from isb_deployer.parameter_mapper import LeaseDetails
from isb_deployer.retry import Deadline, RetryPolicy
from isb_deployer.stack_manager import StackAction, StackManager, StackResult
from isb_deployer.template_resolver import ResolvedTemplate, TemplateSource
from isb_deployer.tests.stubs import stub_cloudformation, stub_event, stub_github

CONFIG = Config(
    lease_table_name='isb-leases',
    intermediate_role_arn='arn:aws:iam::111111111111:role/hub',
)
STACK_NAME = 'isb-localgov-drupal-e8400-e29b-41d4-a716-446655440000'


def resolved(source=TemplateSource.CLOUDFORMATION,
             body=stub_github.template_yaml, name='localgov-drupal'):
    return ResolvedTemplate(
        template_body=body, source=source, template_name=name, branch='main',
    )


@fixture
def lease_lookup():
    lease_lookup = Mock()
    lease_lookup.lookup.return_value = LeaseDetails.from_item(
        stub_event.lease_item(),
    )
    return lease_lookup


@fixture
def resolver():
    resolver = Mock()
    resolver.resolve.return_value = resolved()
    return resolver


@fixture
def stack_manager():
    stack_manager = Mock()
    stack_manager.deploy_or_update.return_value = StackResult(
        stack_id=stub_cloudformation.STACK_ID,
        action=StackAction.CREATED,
        status='CREATE_COMPLETE',
    )
    return stack_manager


@fixture
def bootstrapper():
    bootstrapper = Mock()
    bootstrapper.ensure_bootstrapped.return_value = 21
    return bootstrapper


@fixture
def session():
    return Mock()


@fixture
def sts(session):
    sts = Mock()
    sts.assume_target_account_role.return_value = session
    return sts


@fixture
def events():
    return Mock()


@fixture
def cloudwatch():
    return Mock()


@fixture
def orchestrator(resolver, events, lease_lookup, sts, stack_manager,
                 bootstrapper, cloudwatch):
    return DeploymentOrchestrator(
        CONFIG,
        Mock(),
        resolver=resolver,
        events=events,
        lease_lookup=lease_lookup,
        sts=sts,
        stack_manager_factory=Mock(return_value=stack_manager),
        bootstrapper_factory=Mock(return_value=bootstrapper),
        metrics=DeployerMetrics(cloudwatch, 'ISBDeployer'),
    )


def sent_metrics(cloudwatch):
    return [
        datum
        for call in cloudwatch.put_metric_data.call_args_list
        for datum in call.kwargs['MetricData']
    ]


def sent_metric_names(cloudwatch):
    return [datum['MetricName'] for datum in sent_metrics(cloudwatch)]


def test_deploy_with_parameters(stack_manager):
    lease = LeaseDetails(lease_id='lease-123', account_id='123456789012')
    outcome = deploy_with_parameters(
        stack_manager,
        'isb-app-lease-123',
        'Resources: {}',
        ['AccountId', 'Budget', 'InstanceType'],
        lease,
    )
    assert outcome.parameters_used == 1
    assert outcome.parameters_skipped == 2
    assert outcome.action == StackAction.CREATED
    stack_manager.deploy_or_update.assert_called_once_with(
        'isb-app-lease-123',
        'Resources: {}',
        [{'ParameterKey': 'AccountId', 'ParameterValue': '123456789012'}],
        tags=None,
    )


def test_deploy_without_parameters(stack_manager):
    lease = LeaseDetails(lease_id='lease-123', account_id='123456789012')
    outcome = deploy_with_parameters(
        stack_manager, 'isb-app-lease-123', 'Resources: {}', [], lease,
    )
    assert outcome.parameters_used == 0
    assert outcome.parameters_skipped == 0


def test_run_deploys_cloudformation_scenario(
        orchestrator, resolver, sts, stack_manager, bootstrapper, events,
        lease_lookup, session):
    result = orchestrator.run(stub_event.lease_approved())

    assert result.status == OrchestrationStatus.DEPLOYED
    assert result.stack_name == STACK_NAME
    assert result.outcome.parameters_used == 2
    assert result.outcome.parameters_skipped == 1
    lease_lookup.lookup.assert_called_once_with(
        stub_event.USER_EMAIL, stub_event.LEASE_ID,
    )
    resolver.resolve.assert_called_once_with(
        'localgov-drupal', stub_event.ACCOUNT_ID, 'us-east-1', deadline=ANY,
    )
    sts.assume_target_account_role.assert_called_once_with(
        stub_event.ACCOUNT_ID,
        'ndx_IsbUsersPS',
        session_name='innovation-sandbox-deployer',
        intermediate_role_arn='arn:aws:iam::111111111111:role/hub',
    )
    orchestrator.stack_manager_factory.assert_called_once_with(
        session, stub_event.ACCOUNT_ID, ANY,
    )
    orchestrator.bootstrapper_factory.assert_not_called()

    args, kwargs = stack_manager.deploy_or_update.call_args
    assert args[0] == STACK_NAME
    assert args[2] == [
        {'ParameterKey': 'LeaseId', 'ParameterValue': stub_event.LEASE_ID},
        {'ParameterKey': 'Budget', 'ParameterValue': '50'},
    ]
    assert {'Key': 'isb:lease-id', 'Value': stub_event.LEASE_ID} in kwargs['tags']

    events.deployment_succeeded.assert_called_once_with(
        stub_event.LEASE_ID,
        stub_event.ACCOUNT_ID,
        STACK_NAME,
        stub_cloudformation.STACK_ID,
        StackAction.CREATED,
        template_name='localgov-drupal',
    )
    events.deployment_failed.assert_not_called()


def test_run_event_template_overrides_lease(orchestrator, resolver):
    resolver.resolve.return_value = resolved(name='my-app')
    result = orchestrator.run(
        stub_event.lease_approved(templateName='my-app@feature/x'),
    )
    resolver.resolve.assert_called_once_with(
        'my-app@feature/x', stub_event.ACCOUNT_ID, 'us-east-1', deadline=ANY,
    )
    assert result.stack_name.startswith('isb-my-app-')


def test_run_cdk_scenario_bootstraps_first(orchestrator, resolver,
                                           bootstrapper, stack_manager):
    resolver.resolve.return_value = resolved(
        source=TemplateSource.CDK,
        body='{"Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}}',
        name='council-chatbot',
    )
    calls = []
    bootstrapper.ensure_bootstrapped.side_effect = (
        lambda account_id: calls.append('bootstrap')
    )
    stack_manager.deploy_or_update.side_effect = (
        lambda *args, **kwargs: calls.append('deploy') or StackResult(
            stack_id='id', action=StackAction.CREATED,
        )
    )

    result = orchestrator.run(stub_event.lease_approved())

    assert result.status == OrchestrationStatus.DEPLOYED
    assert calls == ['bootstrap', 'deploy']
    bootstrapper.ensure_bootstrapped.assert_called_once_with(
        stub_event.ACCOUNT_ID,
    )


def test_run_without_template_is_skipped(orchestrator, lease_lookup,
                                         resolver, events, sts):
    lease_lookup.lookup.return_value = LeaseDetails.from_item(
        stub_event.lease_item(originalLeaseTemplateName=None),
    )
    result = orchestrator.run(stub_event.lease_approved())

    assert result.status == OrchestrationStatus.SKIPPED
    assert result.reason == NO_TEMPLATE_CONFIGURED
    resolver.resolve.assert_not_called()
    sts.assume_target_account_role.assert_not_called()
    events.deployment_succeeded.assert_not_called()
    events.deployment_failed.assert_not_called()


def test_run_missing_template_is_skipped(orchestrator, resolver, events, sts):
    resolver.resolve.return_value = None
    result = orchestrator.run(stub_event.lease_approved())

    assert result.status == OrchestrationStatus.SKIPPED
    assert result.reason == TEMPLATE_NOT_FOUND
    sts.assume_target_account_role.assert_not_called()
    events.deployment_failed.assert_not_called()


def test_run_existing_stack_reports_exists(orchestrator, stack_manager, events):
    stack_manager.deploy_or_update.return_value = StackResult(
        stack_id=stub_cloudformation.STACK_ID,
        action=StackAction.EXISTS,
        status='CREATE_COMPLETE',
    )
    result = orchestrator.run(stub_event.lease_approved())
    assert result.outcome.action == StackAction.EXISTS
    assert events.deployment_succeeded.call_args.args[4] == StackAction.EXISTS


def test_run_invalid_event(orchestrator, events, lease_lookup):
    result = orchestrator.run({'detail': {'leaseId': ''}})

    assert result.status == OrchestrationStatus.FAILED
    assert isinstance(result.error, EventValidationError)
    lease_lookup.lookup.assert_not_called()
    args = events.deployment_failed.call_args.args
    assert args[0] == 'unknown'
    assert args[1] == 'unknown'


def test_run_unknown_lease(orchestrator, lease_lookup, events):
    lease_lookup.lookup.side_effect = LeaseNotFoundError('Lease not found')
    result = orchestrator.run(stub_event.lease_approved())

    assert result.status == OrchestrationStatus.FAILED
    args = events.deployment_failed.call_args.args
    assert args[0] == stub_event.LEASE_ID
    assert args[1] == 'unknown'
    assert isinstance(args[2], LeaseNotFoundError)


def test_run_invalid_account_id(orchestrator, lease_lookup, resolver):
    lease_lookup.lookup.return_value = LeaseDetails.from_item(
        stub_event.lease_item(awsAccountId='12345'),
    )
    result = orchestrator.run(stub_event.lease_approved())
    assert isinstance(result.error, ConfigurationError)
    resolver.resolve.assert_not_called()


def test_run_invalid_template(orchestrator, resolver, sts, events):
    resolver.resolve.return_value = resolved(body='- not\n- a template\n')
    result = orchestrator.run(stub_event.lease_approved())

    assert isinstance(result.error, TemplateValidationError)
    sts.assume_target_account_role.assert_not_called()
    assert events.deployment_failed.call_args.kwargs['template_name'] == (
        'localgov-drupal'
    )


def test_run_synthesis_failure(orchestrator, resolver, events):
    resolver.resolve.side_effect = CdkSynthesisError('cdk synth failed')
    result = orchestrator.run(stub_event.lease_approved())
    assert result.status == OrchestrationStatus.FAILED
    events.deployment_failed.assert_called_once()


def test_run_role_assumption_failure(orchestrator, sts, stack_manager):
    sts.assume_target_account_role.side_effect = RoleAssumptionError('denied')
    result = orchestrator.run(stub_event.lease_approved())
    assert isinstance(result.error, RoleAssumptionError)
    stack_manager.deploy_or_update.assert_not_called()


def test_run_stack_failure_reports_stack_name(orchestrator, stack_manager,
                                              events):
    stack_manager.deploy_or_update.side_effect = StackDeploymentError(
        'Stack ended in ROLLBACK_COMPLETE', stack_name=STACK_NAME,
    )
    result = orchestrator.run(stub_event.lease_approved())

    assert result.status == OrchestrationStatus.FAILED
    assert result.stack_name == STACK_NAME
    kwargs = events.deployment_failed.call_args.kwargs
    assert kwargs['stack_name'] == STACK_NAME
    assert events.deployment_failed.call_args.args[1] == stub_event.ACCOUNT_ID


def test_run_aws_client_error_is_reported(orchestrator, sts):
    sts.assume_target_account_role.side_effect = ClientError(
        {'Error': {'Code': 'ExpiredToken', 'Message': 'expired'}},
        'AssumeRole',
    )
    assert orchestrator.run(
        stub_event.lease_approved(),
    ).status == OrchestrationStatus.FAILED


@patch('isb_deployer.orchestrator.LOGGER')
def test_run_unexpected_error_is_reported_and_raised(logger, orchestrator,
                                                     resolver, events):
    resolver.resolve.side_effect = KeyError('surprise')
    with raises(KeyError):
        orchestrator.run(stub_event.lease_approved())
    events.deployment_failed.assert_called_once()
    logger.exception.assert_called_once()


def test_result_response_deployed(orchestrator):
    response = orchestrator.run(stub_event.lease_approved()).to_response()
    assert response['statusCode'] == 200
    body = json.loads(response['body'])
    assert body['status'] == 'deployed'
    assert body['action'] == 'created'
    assert body['stackName'] == STACK_NAME
    assert body['parametersUsed'] == 2
    assert body['parametersSkipped'] == 1


def test_result_response_failed(orchestrator, lease_lookup):
    lease_lookup.lookup.side_effect = LeaseNotFoundError('Lease not found')
    response = orchestrator.run(stub_event.lease_approved()).to_response()
    assert response['statusCode'] == 500
    assert json.loads(response['body'])['error'] == 'Lease not found'


def test_run_passes_deadline_to_every_step(orchestrator, resolver, session,
                                           bootstrapper):
    resolver.resolve.return_value = resolved(
        source=TemplateSource.CDK,
        body='{"Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}}',
        name='council-chatbot',
    )
    deadline = Deadline(600)
    orchestrator.run(stub_event.lease_approved(), deadline=deadline)

    assert resolver.resolve.call_args.kwargs['deadline'] is deadline
    orchestrator.bootstrapper_factory.assert_called_once_with(
        session, stub_event.ACCOUNT_ID, deadline,
    )
    orchestrator.stack_manager_factory.assert_called_once_with(
        session, stub_event.ACCOUNT_ID, deadline,
    )


def test_run_out_of_time_reports_stack_timeout(orchestrator, session, events):
    cfn_client = boto3.client('cloudformation', region_name='us-east-1')
    session.client.return_value = cfn_client
    orchestrator.stack_manager_factory = (
        lambda session, account_id, deadline: StackManager(
            session, 'us-east-1', account_id=account_id,
            retry_policy=RetryPolicy(max_attempts=1), sleep=Mock(),
            deadline=deadline,
        )
    )
    with Stubber(cfn_client) as stubber:
        stubber.add_client_error(
            'describe_stacks',
            **stub_cloudformation.stack_missing_error(STACK_NAME),
        )
        stubber.add_response('create_stack', stub_cloudformation.create_stack)
        stubber.add_response(
            'describe_stacks',
            stub_cloudformation.describe_stack(
                'CREATE_IN_PROGRESS', stack_name=STACK_NAME,
            ),
        )
        result = orchestrator.run(
            stub_event.lease_approved(), deadline=Deadline(0),
        )
        stubber.assert_no_pending_responses()

    assert result.status == OrchestrationStatus.FAILED
    assert isinstance(result.error, StackTimeoutError)
    assert 'Timed out after 0 seconds' in str(result.error)
    args = events.deployment_failed.call_args.args
    assert args[0] == stub_event.LEASE_ID
    assert isinstance(args[2], StackTimeoutError)
    assert events.deployment_failed.call_args.kwargs['stack_name'] == STACK_NAME
    events.deployment_succeeded.assert_not_called()


def test_run_out_of_time_reports_bootstrap_timeout(orchestrator, resolver,
                                                   session, events,
                                                   stack_manager):
    resolver.resolve.return_value = resolved(
        source=TemplateSource.CDK,
        body='{"Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}}',
        name='council-chatbot',
    )
    ssm_client = boto3.client('ssm', region_name='us-east-1')
    cfn_client = boto3.client('cloudformation', region_name='us-east-1')
    clients = {'ssm': ssm_client, 'cloudformation': cfn_client}
    session.client.side_effect = lambda service, **kwargs: clients[service]
    orchestrator.bootstrapper_factory = (
        lambda session, account_id, deadline: CdkBootstrapper(
            session, 'us-east-1', account_id=account_id,
            retry_policy=RetryPolicy(max_attempts=1), sleep=Mock(),
            deadline=deadline,
        )
    )
    with Stubber(ssm_client) as ssm, Stubber(cfn_client) as cfn:
        ssm.add_client_error(
            'get_parameter',
            service_error_code='ParameterNotFound',
            service_message='',
        )
        cfn.add_response(
            'describe_stacks',
            stub_cloudformation.describe_stack(
                'CREATE_IN_PROGRESS', stack_name=BOOTSTRAP_STACK_NAME,
            ),
        )
        cfn.add_response(
            'describe_stacks',
            stub_cloudformation.describe_stack(
                'CREATE_IN_PROGRESS', stack_name=BOOTSTRAP_STACK_NAME,
            ),
        )
        result = orchestrator.run(
            stub_event.lease_approved(), deadline=Deadline(0),
        )

    assert result.status == OrchestrationStatus.FAILED
    assert isinstance(result.error, BootstrapTimeoutError)
    assert isinstance(
        events.deployment_failed.call_args.args[2], BootstrapTimeoutError,
    )
    stack_manager.deploy_or_update.assert_not_called()


def test_run_publishes_success_metrics(orchestrator, cloudwatch):
    orchestrator.run(stub_event.lease_approved())

    cloudwatch.put_metric_data.assert_called_once()
    assert cloudwatch.put_metric_data.call_args.kwargs['Namespace'] == (
        'ISBDeployer'
    )
    names = sent_metric_names(cloudwatch)
    assert names == [
        'TemplateResolutionDuration',
        'TemplateResolutionSuccess',
        'DeploymentDuration',
        'StackCreate',
        'DeploymentSuccess',
        'InvocationDuration',
    ]
    assert orchestrator.metrics.pending == []


def test_run_counts_existing_stack(orchestrator, stack_manager, cloudwatch):
    stack_manager.deploy_or_update.return_value = StackResult(
        stack_id=stub_cloudformation.STACK_ID, action=StackAction.EXISTS,
    )
    orchestrator.run(stub_event.lease_approved())
    names = sent_metric_names(cloudwatch)
    assert 'StackExists' in names
    assert 'StackCreate' not in names


def test_run_cdk_scenario_times_bootstrap(orchestrator, resolver, cloudwatch):
    resolver.resolve.return_value = resolved(
        source=TemplateSource.CDK,
        body='{"Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}}',
        name='council-chatbot',
    )
    orchestrator.run(stub_event.lease_approved())
    assert 'CdkBootstrapDuration' in sent_metric_names(cloudwatch)


def test_run_publishes_failure_metrics(orchestrator, resolver, cloudwatch):
    resolver.resolve.side_effect = CdkSynthesisError('cdk synth failed')
    orchestrator.run(stub_event.lease_approved())

    failures = [
        datum for datum in sent_metrics(cloudwatch)
        if datum['MetricName'] in (
            'TemplateResolutionFailure', 'DeploymentFailure',
        )
    ]
    assert failures == [
        {
            'MetricName': 'TemplateResolutionFailure',
            'Value': 1,
            'Unit': 'Count',
            'Dimensions': [
                {'Name': 'ErrorType', 'Value': 'CdkSynthesisError'},
            ],
        },
        {
            'MetricName': 'DeploymentFailure',
            'Value': 1,
            'Unit': 'Count',
            'Dimensions': [
                {'Name': 'ErrorType', 'Value': 'CdkSynthesisError'},
            ],
        },
    ]
    assert 'DeploymentSuccess' not in sent_metric_names(cloudwatch)


def test_run_skipped_lease_still_flushes(orchestrator, resolver, cloudwatch):
    resolver.resolve.return_value = None
    orchestrator.run(stub_event.lease_approved())
    assert sent_metric_names(cloudwatch) == [
        'TemplateResolutionDuration',
        'InvocationDuration',
    ]


@patch('isb_deployer.orchestrator.LOGGER')
def test_run_unexpected_error_still_flushes(logger, orchestrator, resolver,
                                            cloudwatch):
    resolver.resolve.side_effect = KeyError('surprise')
    with raises(KeyError):
        orchestrator.run(stub_event.lease_approved())
    assert 'InvocationDuration' in sent_metric_names(cloudwatch)


def test_default_metrics_use_cloudwatch_client():
    clients = Mock()
    orchestrator = DeploymentOrchestrator(
        CONFIG,
        clients,
        resolver=Mock(),
        events=Mock(),
        lease_lookup=Mock(),
        sts=Mock(),
    )
    clients.client.assert_any_call('cloudwatch')
    assert orchestrator.metrics.namespace == 'ISBDeployer'
