# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

# pylint: skip-file

from contextlib import contextmanager

from mock import Mock, patch
from pytest import fixture, raises

from isb_deployer.cdk_synthesizer import SynthesisResult
from isb_deployer.config import Config
from isb_deployer.errors import (
    CdkSynthesisError,
    GitHubApiError,
    GitHubNotFoundError,
    GitHubRateLimitError,
    TemplateRefParseError,
    TemplateResolutionError,
)
from isb_deployer.metrics import DeployerMetrics
from isb_deployer.retry import Deadline, RetryPolicy
from isb_deployer.scenario_detector import (
    ScenarioClassification,
    ScenarioType,
)
from isb_deployer.scenario_fetcher import FetchedScenario
from isb_deployer.template_resolver import TemplateResolver, TemplateSource
from isb_deployer.tests.stubs import stub_github

CONFIG = Config(lease_table_name='isb-leases')
CDK_TEMPLATE = '{"Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}}'


class FakeFetcher:
    def __init__(self):
        self.calls = []
        self.exited = False

    @contextmanager
    def fetch(self, template_name, branch, cdk_subpath='', deadline=None):
        self.calls.append((template_name, branch, cdk_subpath))
        self.deadline = deadline
        try:
            yield FetchedScenario(
                local_path='/tmp/work/repo',
                scenario_path=f'/tmp/work/repo/scenarios/{template_name}',
                cdk_path=f'/tmp/work/repo/scenarios/{template_name}/{cdk_subpath}',
            )
        finally:
            self.exited = True


@fixture
def detector():
    detector = Mock()
    detector.detect.return_value = ScenarioClassification(
        ScenarioType.CLOUDFORMATION,
    )
    return detector


@fixture
def fetcher():
    return FakeFetcher()


@fixture
def synthesizer():
    synthesizer = Mock()
    synthesizer.synthesize.return_value = SynthesisResult(
        template_body=CDK_TEMPLATE, stack_name='ChatbotStack',
    )
    return synthesizer


@fixture
def sleep():
    return Mock()


def resolver(detector, fetcher, synthesizer, opener=None, sleep=None,
             metrics=None):
    return TemplateResolver(
        CONFIG,
        detector,
        fetcher,
        synthesizer,
        opener=opener or Mock(),
        retry_policy=RetryPolicy(max_attempts=3, jitter_factor=0.0),
        sleep=sleep or Mock(),
        metrics=metrics,
    )


def test_resolve_cloudformation(detector, fetcher, synthesizer):
    opener = stub_github.opener(
        stub_github.response(200, stub_github.template_yaml.encode('utf-8')),
    )
    resolved = resolver(detector, fetcher, synthesizer, opener).resolve(
        'localgov-drupal',
    )
    assert resolved.template_body == stub_github.template_yaml
    assert resolved.source == TemplateSource.CLOUDFORMATION
    assert not resolved.synthesized
    assert resolved.template_name == 'localgov-drupal'
    assert resolved.branch == 'main'
    detector.detect.assert_called_once_with('localgov-drupal', 'main')
    assert opener.call_args.args[0].full_url == (
        'https://raw.githubusercontent.com/co-cddo/ndx_try_aws_scenarios/'
        'main/cloudformation/scenarios/localgov-drupal/template.yaml'
    )
    synthesizer.synthesize.assert_not_called()


def test_resolve_branch_override(detector, fetcher, synthesizer):
    opener = stub_github.opener(
        stub_github.response(200, stub_github.template_yaml.encode('utf-8')),
    )
    resolved = resolver(detector, fetcher, synthesizer, opener).resolve(
        'my-app@feature/new-feature',
    )
    assert resolved.branch == 'feature/new-feature'
    assert resolved.template_name == 'my-app'
    detector.detect.assert_called_once_with('my-app', 'feature/new-feature')
    assert '/feature/new-feature/' in opener.call_args.args[0].full_url


def test_resolve_cdk(detector, fetcher, synthesizer):
    detector.detect.return_value = ScenarioClassification(
        ScenarioType.CDK_SUBFOLDER, cdk_path='cdk',
    )
    resolved = resolver(detector, fetcher, synthesizer).resolve(
        'council-chatbot', '123456789012', 'us-east-1',
    )
    assert resolved.template_body == CDK_TEMPLATE
    assert resolved.source == TemplateSource.CDK
    assert resolved.synthesized
    assert fetcher.calls == [('council-chatbot', 'main', 'cdk')]
    synthesizer.synthesize.assert_called_once_with(
        '/tmp/work/repo/scenarios/council-chatbot/cdk',
        '123456789012',
        'us-east-1',
        deadline=None,
    )
    assert fetcher.exited


def test_resolve_cdk_synthesis_failure_cleans_up(detector, fetcher,
                                                 synthesizer):
    detector.detect.return_value = ScenarioClassification(
        ScenarioType.CDK, cdk_path='',
    )
    synthesizer.synthesize.side_effect = CdkSynthesisError('synth failed')
    with raises(CdkSynthesisError):
        resolver(detector, fetcher, synthesizer).resolve('council-chatbot')
    assert fetcher.exited


@patch('isb_deployer.template_resolver.LOGGER')
def test_resolve_missing_scenario(logger, detector, fetcher, synthesizer):
    detector.detect.side_effect = GitHubNotFoundError('not found')
    assert resolver(detector, fetcher, synthesizer).resolve('missing') is None
    logger.info.assert_called()
    logger.error.assert_not_called()
    logger.warning.assert_not_called()


def test_resolve_missing_template_file(detector, fetcher, synthesizer):
    opener = stub_github.opener(stub_github.response(404, b'404: Not Found'))
    assert resolver(detector, fetcher, synthesizer, opener).resolve(
        'empty-folder',
    ) is None


def test_resolve_retries_transient_detection(detector, fetcher, synthesizer):
    detector.detect.side_effect = [
        GitHubApiError('GitHub API error: 502', status_code=502, retryable=True),
        ScenarioClassification(ScenarioType.CLOUDFORMATION),
    ]
    opener = stub_github.opener(
        stub_github.response(200, stub_github.template_yaml.encode('utf-8')),
    )
    sleep = Mock()
    assert resolver(
        detector, fetcher, synthesizer, opener, sleep=sleep,
    ).resolve('app') is not None
    assert detector.detect.call_count == 2
    sleep.assert_called_once_with(1.0)


def test_resolve_retries_template_download(detector, fetcher, synthesizer):
    opener = stub_github.opener(
        stub_github.response(503),
        stub_github.response(503),
        stub_github.response(200, stub_github.template_yaml.encode('utf-8')),
    )
    resolved = resolver(detector, fetcher, synthesizer, opener).resolve('app')
    assert resolved.template_body == stub_github.template_yaml
    assert opener.call_count == 3


def test_resolve_does_not_retry_rate_limit(detector, fetcher, synthesizer):
    detector.detect.side_effect = GitHubRateLimitError('rate limited')
    with raises(GitHubRateLimitError):
        resolver(detector, fetcher, synthesizer).resolve('app')
    detector.detect.assert_called_once()


def test_resolve_invalid_reference(detector, fetcher, synthesizer):
    with raises(TemplateRefParseError):
        resolver(detector, fetcher, synthesizer).resolve('@main')
    detector.detect.assert_not_called()


def test_resolve_wraps_unexpected_errors(detector, fetcher, synthesizer):
    detector.detect.side_effect = ValueError('Expecting value: line 1')
    with raises(TemplateResolutionError) as error:
        resolver(detector, fetcher, synthesizer).resolve('app')
    assert "'app@main'" in str(error.value)


def metric_names(metrics):
    return [datum['MetricName'] for datum in metrics.pending]


def test_resolve_cdk_passes_deadline_and_records_metrics(detector, fetcher,
                                                         synthesizer):
    detector.detect.return_value = ScenarioClassification(
        ScenarioType.CDK, cdk_path='',
    )
    metrics = DeployerMetrics(None, 'ISBDeployer', clock=lambda: 10.0)
    deadline = Deadline(300, clock=lambda: 10.0)
    resolver(detector, fetcher, synthesizer, metrics=metrics).resolve(
        'council-chatbot', '123456789012', 'us-east-1', deadline=deadline,
    )
    assert fetcher.deadline is deadline
    assert synthesizer.synthesize.call_args.kwargs['deadline'] is deadline
    assert metric_names(metrics) == [
        'GitHubApiDuration',
        'GitCloneDuration',
        'CdkSynthesisDuration',
        'CdkSynthesisSuccess',
    ]


def test_resolve_cdk_failure_counts_synthesis_failure(detector, fetcher,
                                                      synthesizer):
    detector.detect.return_value = ScenarioClassification(
        ScenarioType.CDK, cdk_path='',
    )
    synthesizer.synthesize.side_effect = CdkSynthesisError('synth failed')
    metrics = DeployerMetrics(None, 'ISBDeployer')
    with raises(CdkSynthesisError):
        resolver(detector, fetcher, synthesizer, metrics=metrics).resolve(
            'council-chatbot',
        )
    failure = [
        datum for datum in metrics.pending
        if datum['MetricName'] == 'CdkSynthesisFailure'
    ]
    assert failure == [{
        'MetricName': 'CdkSynthesisFailure',
        'Value': 1,
        'Unit': 'Count',
        'Dimensions': [{'Name': 'ErrorType', 'Value': 'CdkSynthesisError'}],
    }]
    assert 'CdkSynthesisSuccess' not in metric_names(metrics)


def test_resolve_missing_scenario_counts_not_found(detector, fetcher,
                                                   synthesizer):
    detector.detect.side_effect = GitHubNotFoundError('not found')
    metrics = DeployerMetrics(None, 'ISBDeployer')
    assert resolver(
        detector, fetcher, synthesizer, metrics=metrics,
    ).resolve('missing') is None
    assert 'TemplateNotFound' in metric_names(metrics)


def test_resolve_missing_template_file_counts_not_found(detector, fetcher,
                                                        synthesizer):
    opener = stub_github.opener(stub_github.response(404, b'404: Not Found'))
    metrics = DeployerMetrics(None, 'ISBDeployer')
    assert resolver(
        detector, fetcher, synthesizer, opener, metrics=metrics,
    ).resolve('empty-folder') is None
    assert metric_names(metrics).count('TemplateNotFound') == 1


def test_resolve_rate_limit_counted(detector, fetcher, synthesizer):
    detector.detect.side_effect = GitHubRateLimitError('rate limited')
    metrics = DeployerMetrics(None, 'ISBDeployer')
    with raises(GitHubRateLimitError):
        resolver(detector, fetcher, synthesizer, metrics=metrics).resolve(
            'app',
        )
    assert 'GitHubRateLimited' in metric_names(metrics)
