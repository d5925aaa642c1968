import unittest
from unittest import mock

import requests
from botocore.config import Config as BotoConfig

from NomadDrain.clients import AutoscalingClient
from NomadDrain.clients import ClientFactory
from NomadDrain.clients import NomadClient
from NomadDrain.entity import Deadline
from NomadDrain.entity import ScopedToken
from NomadDrain.entity import Secret
from NomadDrain.exceptions import ConfigurationError
from NomadDrain.exceptions import DeadlineExceeded
from NomadDrain.exceptions import InvalidResponseError
from NomadDrain.exceptions import RequestRejected
from NomadDrain.exceptions import TransientError
from tests.unit.helper import FakeClock
from tests.unit.helper import create_logging
from tests.unit.helper import get_fixture
from tests.unit.helper import response

NOMAD_ADDR = 'http://nomad.service.consul:4646/'


class TestNomadClient(unittest.TestCase):

    def setUp(self):
        self.http = mock.Mock()
        self.client = NomadClient(
            self.http,
            create_logging(),
            NOMAD_ADDR,
            timeout = 3,
            token = ScopedToken(Secret('nomad-secret-id'))
        )


    def test_token_is_sent(self):
        self.http.request.return_value = response(200, get_fixture('nomad_nodes.json'))

        nodes = self.client.list_nodes()

        self.assertEqual(3, len(nodes))
        self.http.request.assert_called_once_with(
            'GET',
            'http://nomad.service.consul:4646/v1/nodes',
            headers = { 'X-Nomad-Token': 'nomad-secret-id' },
            json = None,
            timeout = 3
        )


    def test_timeout_is_bounded_by_deadline(self):
        clock = FakeClock()
        deadline = Deadline(30, 0, clock = clock)
        self.http.request.return_value = response(200, [])

        self.client.get_node_allocations('abc')
        self.assertEqual(3, self.http.request.call_args[1].get('timeout'))

        self.client.deadline = deadline
        clock.sleep(28.5)
        self.client.get_node_allocations('abc')

        self.assertEqual(1.5, self.http.request.call_args[1].get('timeout'))


    def test_no_request_after_deadline(self):
        clock = FakeClock()
        self.client.deadline = Deadline(30, 0, clock = clock)
        clock.sleep(30)

        with self.assertRaises(DeadlineExceeded) as context:
            self.client.get_node('abc')

        self.assertIn('GET http://nomad.service.consul:4646/v1/node/abc', context.exception.get_message())
        self.http.request.assert_not_called()


    def test_drain_payload(self):
        self.http.request.return_value = response(200, { 'EvalIDs': [], 'NodeModifyIndex': 12 })

        self.client.set_node_drain('abc', 600, ignore_system_jobs = True)

        args, kwargs = self.http.request.call_args
        self.assertEqual(('POST', 'http://nomad.service.consul:4646/v1/node/abc/drain'), args)
        self.assertEqual(
            {
                'NodeID': 'abc',
                'DrainSpec': {
                    'Deadline': 600000000000,
                    'IgnoreSystemJobs': True
                },
                'MarkEligible': False
            },
            kwargs.get('json')
        )


    def test_eligibility_payload(self):
        self.http.request.return_value = response(200, { 'NodeModifyIndex': 13 })

        self.client.set_node_eligibility('abc', 'ineligible')

        args, kwargs = self.http.request.call_args
        self.assertEqual(('POST', 'http://nomad.service.consul:4646/v1/node/abc/eligibility'), args)
        self.assertEqual({ 'NodeID': 'abc', 'Eligibility': 'ineligible' }, kwargs.get('json'))


    def test_transient_failures(self):
        for status in [429, 500, 502, 503, 504]:
            self.http.request.return_value = response(status)

            with self.assertRaises(TransientError):
                self.client.get_node('abc')

        for error in [requests.ConnectionError('refused'), requests.Timeout('timed out')]:
            self.http.request.side_effect = error

            with self.assertRaises(TransientError):
                self.client.get_node('abc')


    def test_rejected_request(self):
        self.http.request.return_value = response(403, { 'errors': ['Permission denied'] })

        with self.assertRaises(RequestRejected) as context:
            self.client.get_node('abc')

        self.assertEqual(403, context.exception.status)
        self.assertIn('Permission denied', context.exception.get_message())


    def test_empty_response(self):
        self.http.request.return_value = response(200)

        self.assertEqual({ }, self.client.set_node_eligibility('abc', 'ineligible'))


    def test_invalid_response(self):
        r = response(200)
        r.content = b'<html>'
        self.http.request.return_value = r

        with self.assertRaises(InvalidResponseError):
            self.client.get_node('abc')


class TestAutoscalingClient(unittest.TestCase):

    def setUp(self):
        self.boto_client = mock.Mock()
        self.client = AutoscalingClient(self.boto_client, create_logging())


    def test_describe_lifecycle_hook(self):
        self.boto_client.describe_lifecycle_hooks.return_value = {
            'LifecycleHooks': [
                { 'LifecycleHookName': 'nomad-drain', 'HeartbeatTimeout': 300, 'GlobalTimeout': 30000 }
            ]
        }

        hook = self.client.describe_lifecycle_hook('nomad-clients', 'nomad-drain')

        self.assertEqual(300, hook.get('HeartbeatTimeout'))
        self.boto_client.describe_lifecycle_hooks.assert_called_once_with(
            AutoScalingGroupName = 'nomad-clients',
            LifecycleHookNames = ['nomad-drain']
        )


    def test_missing_lifecycle_hook(self):
        self.boto_client.describe_lifecycle_hooks.return_value = { 'LifecycleHooks': [] }

        with self.assertRaises(ConfigurationError):
            self.client.describe_lifecycle_hook('nomad-clients', 'nomad-drain')


    def test_heartbeat(self):
        self.client.record_lifecycle_action_heartbeat('nomad-drain', 'nomad-clients', 'token', 'i-123')

        self.boto_client.record_lifecycle_action_heartbeat.assert_called_once_with(
            LifecycleHookName = 'nomad-drain',
            AutoScalingGroupName = 'nomad-clients',
            LifecycleActionToken = 'token',
            InstanceId = 'i-123'
        )


class TestClientFactory(unittest.TestCase):

    def test_clients_are_cached(self):
        session = mock.Mock()
        factory = ClientFactory(session, create_logging())

        self.assertIs(factory.get('autoscaling', 'eu-central-1'), factory.get('autoscaling', 'eu-central-1'))
        factory.get('autoscaling')

        self.assertEqual(2, session.client.call_count)


    def test_config_is_passed_to_client(self):
        session = mock.Mock()
        boto_config = BotoConfig(read_timeout = 5)

        ClientFactory(session, create_logging()).get('autoscaling', 'eu-central-1', boto_config)

        session.client.assert_called_once_with('autoscaling', region_name = 'eu-central-1', config = boto_config)
