import functools
import time

from tenacity import RetryError

from .clients import NomadClient
from .clients import create_retrying
from .entity import Deadline
from .entity import DrainStatus
from .entity import NodeIdentity
from .exceptions import DeadlineExceeded
from .exceptions import DrainError
from .exceptions import InvalidResponseError
from .exceptions import RequestRejected
from .exceptions import TransientError
from .logging import Logging


class DrainClient(object):
    """
    Drains the nomad node that runs on a given aws instance.

    :type nomad: NomadClient
    :param nomad: A nomad client, authorized with the token of this invocation
    :type poll_interval: float
    :param poll_interval: Seconds between two status polls
    :type max_poll_failures: int
    :param max_poll_failures: Consecutive transient failures tolerated, while resolving, draining or polling
    :type drain_deadline: int
    :param drain_deadline: Seconds nomad waits before force stopping remaining allocations
    """

    INSTANCE_ID_ATTRIBUTE = 'unique.platform.aws.instance-id'
    INELIGIBLE = 'ineligible'
    ACTIVE_CLIENT_STATUS = ['pending', 'running']


    def __init__(self, nomad: NomadClient, logging: Logging, poll_interval: float = 5, max_poll_failures: int = 3,
                 drain_deadline: int = 600, ignore_system_jobs: bool = False, sleep = time.sleep):
        self.nomad = nomad
        self.logger = logging.get_logger()
        self.formatter = logging.get_formatter()
        self.poll_interval = poll_interval
        self.max_poll_failures = max_poll_failures
        self.drain_deadline = drain_deadline
        self.ignore_system_jobs = ignore_system_jobs
        self.sleep = sleep


    def resolve_node(self, instance_id: str, deadline: Deadline):
        """
        Find the node whose aws instance id attribute matches.

        :rtype: NodeIdentity
        :return: The node or None if no node reports this instance id
        """
        nodes = self.__call(self.nomad.list_nodes, deadline, 'listing nodes')

        matches = []
        for listed in nodes:
            if listed.get('Status') == 'down':
                self.logger.debug('Skipping node %s: node is down', listed.get('ID'))
                continue

            details = self.__call(
                functools.partial(self.__get_node_or_none, listed.get('ID')),
                deadline,
                'reading node %s' % listed.get('ID')
            )
            if details is None:
                continue

            attributes = details.get('Attributes') or { }
            if attributes.get(self.INSTANCE_ID_ATTRIBUTE) == instance_id:
                matches.append(NodeIdentity(details.get('ID'), details.get('Name'), instance_id))

        if len(matches) > 1:
            raise self.formatter.get_error(
                DrainError,
                'Found %s nodes for instance %s: %s. Refusing to guess.',
                str(len(matches)),
                instance_id,
                ', '.join([node.id for node in matches])
            )

        if len(matches) == 0:
            self.logger.info('No nomad node found for instance %s', instance_id)
            return None

        self.logger.info('Instance %s is nomad node %s', instance_id, matches[0])

        return matches[0]


    def start_drain(self, node: NodeIdentity, deadline: Deadline):
        self.logger.info('Setting node %s to be ineligible', node.id)
        self.__call(
            functools.partial(self.nomad.set_node_eligibility, node.id, self.INELIGIBLE),
            deadline,
            'setting node eligibility'
        )

        self.logger.info('Draining node %s', node.id)
        self.__call(
            functools.partial(self.nomad.set_node_drain, node.id, self.drain_deadline, self.ignore_system_jobs),
            deadline,
            'enabling drain'
        )


    def get_status(self, node: NodeIdentity) -> DrainStatus:
        try:
            details = self.nomad.get_node(node.id)
        except RequestRejected as e:
            if e.status != 404:
                raise

            self.logger.info('Node %s is gone', node.id)
            return DrainStatus(DrainStatus.COMPLETE, 0)

        allocations = self.nomad.get_node_allocations(node.id)
        remaining = len([a for a in allocations if self.__is_active(a)])

        if details.get('Drain') or details.get('DrainStrategy'):
            return DrainStatus(DrainStatus.DRAINING, remaining)

        if remaining == 0:
            return DrainStatus(DrainStatus.COMPLETE, remaining)

        # drain has ended, but allocations are left: it has been cancelled or reverted
        return DrainStatus(DrainStatus.FAILED, remaining)


    def wait_for_drain(self, node: NodeIdentity, deadline: Deadline, on_poll = None) -> DrainStatus:
        """
        Poll the drain status until it is terminal or the deadline is reached. Never sleeps past the deadline.
        A status that is not terminal at the deadline is returned as is.

        :type on_poll: callable
        :param on_poll: Called with the current status after every poll, that did not end the drain
        """
        status = DrainStatus(DrainStatus.PENDING)
        failures = 0
        polls = 0

        while True:
            if deadline.expired():
                self.logger.warning('Deadline reached while node %s is %s', node.id, status.state)
                return status

            polls += 1
            try:
                status = self.get_status(node)
                failures = 0

            except TransientError as e:
                failures += 1
                if failures > self.max_poll_failures:
                    raise self.formatter.get_error(
                        DrainError,
                        'Polling drain status of node %s failed %s times in a row: %s',
                        node.id,
                        str(failures),
                        e.get_message()
                    )
                self.logger.warning('Poll %s of node %s failed: %s', str(polls), node.id, e.get_message())

            except DeadlineExceeded:
                self.logger.warning('Deadline reached while polling node %s, which is %s', node.id, status.state)
                return status

            except (RequestRejected, InvalidResponseError) as e:
                raise self.formatter.get_error(DrainError, 'Polling drain status failed: %s', e.get_message())

            else:
                self.logger.info('Poll %s: node %s is %s', str(polls), node.id, status)
                if status.is_terminal():
                    return status

            if on_poll is not None:
                on_poll(status)

            remaining = deadline.remaining()
            if remaining <= 0:
                continue

            self.sleep(min(self.poll_interval, remaining))


    def __is_active(self, allocation: dict) -> bool:
        if allocation.get('ClientStatus') not in self.ACTIVE_CLIENT_STATUS:
            return False

        return not (self.ignore_system_jobs and allocation.get('JobType') == 'system')


    def __get_node_or_none(self, node_id: str):
        try:
            return self.nomad.get_node(node_id)
        except RequestRejected as e:
            # the node has been garbage collected after it was listed
            if e.status == 404:
                return None
            raise


    def __call(self, action, deadline: Deadline, description: str):
        deadline.ensure_not_expired(description)

        retrying = create_retrying(self.max_poll_failures + 1, deadline, self.logger, self.sleep)
        try:
            for attempt in retrying:
                with attempt:
                    result = action()

        except RetryError as e:
            raise self.formatter.get_error(
                DrainError,
                '%s failed after %s attempts: %s',
                description,
                str(e.last_attempt.attempt_number),
                repr(e.last_attempt.exception())
            )

        except (RequestRejected, InvalidResponseError) as e:
            raise self.formatter.get_error(DrainError, '%s failed: %s', description, e.get_message())

        return result
