import time

import requests
from boto3 import Session
from botocore.client import BaseClient as BotoClient
from botocore.config import Config as BotoConfig
from tenacity import Retrying
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from .entity import Deadline
from .entity import FederatedIdentity
from .entity import ScopedToken
from .entity import Secret
from .exceptions import ConfigurationError
from .exceptions import DeadlineExceeded
from .exceptions import InvalidResponseError
from .exceptions import RequestRejected
from .exceptions import TransientError
from .logging import Logging


def create_retrying(max_attempts: int, deadline: Deadline, logger, sleep = time.sleep, multiplier: float = 1,
                    max_wait: float = 10) -> Retrying:
    """
    Retry transient failures with exponential backoff. Stops after max_attempts or as soon as
    the next sleep would not end before the deadline.

    :type deadline: Deadline
    :param deadline: The invocation's deadline
    :type sleep: callable
    :param sleep: Sleep function, replaceable for tests
    """

    def stop_before_deadline(retry_state) -> bool:
        return retry_state.upcoming_sleep >= deadline.remaining()


    def log_retry(retry_state):
        logger.warning(
            'Attempt %s failed with %s. Retrying in %s seconds.',
            retry_state.attempt_number,
            repr(retry_state.outcome.exception()),
            retry_state.upcoming_sleep
        )


    return Retrying(
        retry = retry_if_exception_type(TransientError),
        stop = stop_after_attempt(max_attempts) | stop_before_deadline,
        wait = wait_exponential(multiplier = multiplier, max = max_wait),
        sleep = sleep,
        before_sleep = log_retry,
        reraise = False
    )


def create_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({ 'Accept': 'application/json' })
    return session


class ClientFactory(object):
    """
    Creates the boto3 service clients of an invocation. Each client is created once per region
    and then served from a local cache
    """


    def __init__(self, session: Session, logging: Logging):
        """
        :param session: A boto3 Session instance
        :type session: Session
        :param logging: A Logging instance
        :type logging: Logging
        """
        self.session = session
        self.logger = logging.get_logger()
        self.clients = { }


    def get(self, name: str, region_name: str = None, config: BotoConfig = None) -> BotoClient:
        """
        Get a boto client. Clients will be cached locally.
        E.g. get('autoscaling') will return boto3.client('autoscaling')

        :type name: str
        :param name: The name of the client to create

        :type region_name: str
        :param region_name: The region this client will be created in. Defaults to the session's region.

        :type config: BotoConfig
        :param config: Timeouts and retries of the client. Only applied when the client is created.

        :rtype: BotoClient
        :return: Service client instance
        """
        key = name + '_' + (region_name or 'default')
        client = self.clients.get(key, None)
        if client is None:
            self.logger.debug('Client %s in region %s not created. Creating ...', name, region_name)
            client = self.session.client(name, region_name = region_name, config = config)
            self.clients.update({ key: client })

        return client


class BaseClient(object):
    """
    :type client: BotoClient
    :param client: A botocore client or a requests session
    :type logger: Logger
    :param logger: A logger instance
    :type formatter: MessageFormatter
    :param formatter: A formatter instance
    """

    client = None
    logger = None
    formatter = None


    def __init__(self, client, logging: Logging):
        self.client = client
        self.logger = logging.get_logger()
        self.formatter = logging.get_formatter()


class AutoscalingClient(BaseClient):

    def complete_lifecycle_action(self, hook_name, group_name, token, result, instance_id):
        self.logger.debug('Completing lifecycle action for %s with %s', instance_id, result)
        _ = self.client.complete_lifecycle_action(
            LifecycleHookName = hook_name,
            AutoScalingGroupName = group_name,
            LifecycleActionToken = token,
            LifecycleActionResult = result,
            InstanceId = instance_id
        )


    def record_lifecycle_action_heartbeat(self, hook_name, group_name, token, instance_id):
        self.logger.debug('Recording lifecycle action heartbeat for %s', instance_id)
        _ = self.client.record_lifecycle_action_heartbeat(
            LifecycleHookName = hook_name,
            AutoScalingGroupName = group_name,
            LifecycleActionToken = token,
            InstanceId = instance_id
        )


    def describe_lifecycle_hook(self, group_name, hook_name) -> dict:
        """
        :rtype: dict
        :return: The hook description, including HeartbeatTimeout and GlobalTimeout
        """
        hooks = self.client.describe_lifecycle_hooks(
            AutoScalingGroupName = group_name,
            LifecycleHookNames = [hook_name]
        ).get('LifecycleHooks', [])

        for hook in hooks:
            if hook.get('LifecycleHookName') == hook_name:
                return hook

        raise self.formatter.get_error(
            ConfigurationError,
            'Lifecycle hook %s not found in group %s',
            hook_name,
            group_name
        )


class HttpClient(BaseClient):
    """
    Thin JSON client on top of a requests session.

    Connection errors, timeouts and the status codes in transient_status raise TransientError,
    any other error status raises RequestRejected.

    Each request waits at most timeout seconds and never longer than the deadline leaves.
    A request that would start after the deadline raises DeadlineExceeded.
    """

    transient_status = [429, 500, 502, 503, 504]
    token_header = None


    def __init__(self, client: requests.Session, logging: Logging, address: str, timeout: float = 10,
                 deadline: Deadline = None):
        super().__init__(client, logging)
        self.address = address.rstrip('/')
        self.timeout = timeout
        self.deadline = deadline


    def get_timeout(self, deadline: Deadline = None) -> float:
        deadline = deadline or self.deadline
        if deadline is None:
            return self.timeout

        return min(self.timeout, deadline.remaining())


    def request(self, method: str, path: str, token: Secret = None, json: dict = None, deadline: Deadline = None):
        url = self.address + path
        timeout = self.get_timeout(deadline)
        if timeout <= 0:
            raise self.formatter.get_error(DeadlineExceeded, 'Deadline reached before %s %s', method, url)

        headers = { }
        if token is not None:
            headers.update({ self.token_header: token.reveal() })

        self.logger.debug('%s %s', method, url)
        try:
            response = self.client.request(method, url, headers = headers, json = json, timeout = timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise self.formatter.get_error(TransientError, '%s %s failed: %s', method, url, repr(e))

        if response.status_code in self.transient_status:
            raise self.formatter.get_error(
                TransientError, '%s %s returned %s', method, url, str(response.status_code)
            )

        if response.status_code >= 400:
            error = RequestRejected(
                self.formatter.format('%s %s was rejected with %s: %s', [
                    method, url, str(response.status_code), self.__error_text(response)
                ]),
                response.status_code
            )
            raise error

        if response.status_code == 204 or not response.content:
            return { }

        try:
            return response.json()
        except ValueError as e:
            raise self.formatter.get_error(InvalidResponseError, 'Unexpected response from %s: %s', url, repr(e))


    def __error_text(self, response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]

        if type(body) is dict and body.get('errors'):
            return ', '.join([str(e) for e in body.get('errors')])

        return str(body)[:200]


class VaultClient(HttpClient):
    token_header = 'X-Vault-Token'


    def login_aws_iam(self, path: str, role: str, identity: FederatedIdentity, deadline: Deadline = None) -> Secret:
        """
        Login with the AWS auth method of type iam

        :type path: str
        :param path: Mount path of the AWS auth method, usually "aws"
        :type role: str
        :param role: Name of the role to login with
        :type identity: FederatedIdentity
        :param identity: The signed sts:GetCallerIdentity request
        :type deadline: Deadline
        :param deadline: Bounds the request timeout

        :rtype: Secret
        :return: The vault client token
        """
        self.logger.info('Logging into vault at %s with role %s', path, role)
        payload = { 'role': role }
        payload.update(identity.to_dict())

        response = self.request('POST', '/v1/auth/%s/login' % path, json = payload, deadline = deadline)
        token = (response.get('auth') or { }).get('client_token')
        if not token:
            raise self.formatter.get_error(InvalidResponseError, 'Unexpected response from vault: no client token')

        return Secret(token)


    def read_nomad_token(self, token: Secret, path: str, role: str, deadline: Deadline = None) -> ScopedToken:
        self.logger.info('Reading nomad token from %s for role %s', path, role)
        response = self.request('GET', '/v1/%s/creds/%s' % (path, role), token = token, deadline = deadline)
        data = response.get('data') or { }
        if not data.get('secret_id'):
            raise self.formatter.get_error(InvalidResponseError, 'Unexpected response from vault: no secret id')

        return ScopedToken(
            Secret(data.get('secret_id')),
            issued_at = time.time(),
            lease_duration = int(response.get('lease_duration') or 0),
            accessor = data.get('accessor_id')
        )


class NomadClient(HttpClient):
    token_header = 'X-Nomad-Token'


    def __init__(self, client: requests.Session, logging: Logging, address: str, timeout: float = 10,
                 token: ScopedToken = None, deadline: Deadline = None):
        super().__init__(client, logging, address, timeout, deadline)
        self.token = token


    def request(self, method: str, path: str, token: Secret = None, json: dict = None, deadline: Deadline = None):
        if token is None and self.token is not None:
            token = self.token.value

        return super().request(method, path, token, json, deadline)


    def list_nodes(self) -> list:
        return self.request('GET', '/v1/nodes')


    def get_node(self, node_id: str) -> dict:
        return self.request('GET', '/v1/node/%s' % node_id)


    def get_node_allocations(self, node_id: str) -> list:
        return self.request('GET', '/v1/node/%s/allocations' % node_id)


    def set_node_eligibility(self, node_id: str, eligibility: str):
        self.logger.debug('Setting node %s eligibility to %s', node_id, eligibility)
        return self.request('POST', '/v1/node/%s/eligibility' % node_id, json = {
            'NodeID': node_id,
            'Eligibility': eligibility
        })


    def set_node_drain(self, node_id: str, deadline: int, ignore_system_jobs: bool = False):
        """
        :type deadline: int
        :param deadline: Seconds after which remaining allocations are force stopped
        """
        self.logger.debug('Enabling drain on node %s with deadline %ss', node_id, deadline)
        return self.request('POST', '/v1/node/%s/drain' % node_id, json = {
            'NodeID': node_id,
            'DrainSpec': {
                # nomad expects nanoseconds
                'Deadline': int(deadline * 1e9),
                'IgnoreSystemJobs': ignore_system_jobs
            },
            'MarkEligible': False
        })
