import time
from logging import Logger

from boltons.tbutils import ExceptionInfo
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from transitions import EventData
from transitions import Machine

from .clients import AutoscalingClient
from .config import Config
from .credentials import CredentialExchanger
from .entity import Deadline
from .entity import DrainEvent
from .entity import DrainStatus
from .entity import HandlerResult
from .entity import LifecycleOutcome
from .exceptions import AuthError
from .exceptions import ConfigurationError
from .exceptions import DeadlineExceeded
from .exceptions import LifecycleActionSpentError
from .logging import Logging
from .logging import MessageFormatter


def listify(obj):
    if obj is None:
        return []
    return obj if isinstance(obj, list) else [obj]


class Heartbeater(object):
    """
    Extends the lifecycle action while the drain is in progress.

    A heartbeat is only sent before the deadline, when less than threshold seconds are left,
    the deadline can still be extended and the maximum number of heartbeats has not been reached.
    Heartbeats are best effort: failures are logged and ignored.
    Once closed, no heartbeat will be sent anymore.
    """


    def __init__(self, autoscaling: AutoscalingClient, event: DrainEvent, deadline: Deadline, threshold: float,
                 max_heartbeats: int, logging: Logging):
        self.autoscaling = autoscaling
        self.event = event
        self.deadline = deadline
        self.threshold = threshold
        self.max_heartbeats = max_heartbeats
        self.logger = logging.get_logger()
        self.sent_at = []
        self.closed = False


    @property
    def count(self) -> int:
        return len(self.sent_at)


    def __call__(self, status: DrainStatus = None) -> bool:
        if self.deadline.expired() or self.closed or self.count >= self.max_heartbeats:
            return False

        if self.deadline.remaining() >= self.threshold or not self.deadline.can_extend():
            return False

        self.logger.info('%s seconds left. Sending heartbeat for %s', self.deadline.remaining(), self.event.to_str())
        sent_at = self.deadline.clock()
        try:
            self.autoscaling.record_lifecycle_action_heartbeat(
                self.event.lifecycle_hook_name,
                self.event.autoscaling_group_name,
                self.event.lifecycle_action_token,
                self.event.instance_id
            )
        except (BotoCoreError, ClientError) as e:
            self.logger.warning('Heartbeat failed, proceeding without: %s', repr(e))
            return False

        self.sent_at.append(sent_at)
        self.deadline.extend()
        self.logger.info('Heartbeat %s sent. %s seconds left', str(self.count), self.deadline.remaining())

        return True


    def close(self):
        self.closed = True


class DrainModel(object):
    """
    The state of a single drain invocation. Callbacks are wired to the machine by LifecycleHandler.

    :type event: DrainEvent
    :param event: The triggering event
    :type drain_client_factory: callable
    :param drain_client_factory: Creates a DrainClient from a ScopedToken (or None) and the Deadline its requests are bound to
    :type invocation_limit: float
    :param invocation_limit: Seconds the invocation may run, if known
    :type clock: callable
    :param clock: A monotonic clock returning seconds
    """

    STARTED = 'started'
    AUTHENTICATING = 'authenticating'
    DRAINING = 'draining'
    REPORTING = 'reporting'
    DONE = 'done'

    logger = None
    formatter = None

    deadline = None
    heartbeater = None
    token = None
    node = None
    drain_status = None
    outcome = None
    error = None
    reported = False


    def __init__(self, event: DrainEvent, config: Config, autoscaling: AutoscalingClient,
                 exchanger: CredentialExchanger, drain_client_factory, logging: Logging,
                 invocation_limit: float = None, clock = time.monotonic):
        self.event = event
        self.config = config
        self.autoscaling = autoscaling
        self.exchanger = exchanger
        self.drain_client_factory = drain_client_factory
        self.logging = logging
        self.logger = logging.get_logger()
        self.formatter = logging.get_formatter()
        self.invocation_limit = invocation_limit
        self.clock = clock
        self.passed_states = []
        self.state = self.STARTED


    def get_initial_state(self) -> str:
        return self.STARTED


    def get_failure_state(self) -> str:
        return self.REPORTING


    def get_unrecoverable_states(self) -> list:
        return [self.REPORTING, self.DONE]


    def get_transitions(self):
        return [
            {
                'source': self.STARTED,
                'dest': self.AUTHENTICATING,
                'triggers': [
                    {
                        'name': 'authenticate',
                        'after': [self.do_exchange_credentials],
                    }
                ]
            },
            {
                'source': self.AUTHENTICATING,
                'dest': self.DRAINING,
                'triggers': [
                    {
                        'name': 'drain',
                        'conditions': [self.is_authenticated],
                        'after': [self.do_drain_node],
                    }
                ]
            },
            {
                'source': self.DRAINING,
                'dest': self.REPORTING,
                'triggers': [
                    {
                        'name': 'report',
                        'before': [self.do_decide_outcome],
                    }
                ]
            },
            {
                'source': self.REPORTING,
                'dest': self.DONE,
                'triggers': [
                    {
                        'name': 'finish',
                        # the state stays reporting if the report fails
                        'before': [self.do_report_outcome],
                    }
                ]
            },
        ]


    def start(self):
        """
        Fix the deadline. Time spent reading the hook already counts against it.
        """
        started_at = self.clock()
        hook = self.autoscaling.describe_lifecycle_hook(
            self.event.autoscaling_group_name,
            self.event.lifecycle_hook_name
        )
        timeout = hook.get('HeartbeatTimeout')
        global_timeout = hook.get('GlobalTimeout')

        self.deadline = Deadline(
            timeout,
            self.config.safety_margin,
            global_timeout = global_timeout,
            invocation_limit = self.invocation_limit,
            clock = self.clock,
            started_at = started_at
        )
        self.deadline.ensure_not_expired('authenticating')

        max_heartbeats = max(0, global_timeout // timeout - 1) if global_timeout else 0
        if self.config.max_heartbeats is not None:
            max_heartbeats = min(max_heartbeats, self.config.max_heartbeats)

        self.heartbeater = Heartbeater(
            self.autoscaling,
            self.event,
            self.deadline,
            self.config.heartbeat_threshold,
            max_heartbeats,
            self.logging
        )
        self.logger.info('Deadline in %s seconds, up to %s heartbeats', self.deadline.remaining(), str(max_heartbeats))


    def set_failure(self, error: Exception):
        self.error = error
        self.outcome = LifecycleOutcome(LifecycleOutcome.ABANDON)
        if self.heartbeater is not None:
            self.heartbeater.close()


    def get_result(self) -> HandlerResult:
        return HandlerResult(
            self.event,
            outcome = self.outcome,
            node = self.node,
            drain_status = self.drain_status,
            heartbeats = self.heartbeater.count if self.heartbeater is not None else 0,
            error = self.error
        )

    #
    # conditions
    #

    def is_authenticated(self, event_data: EventData) -> bool:
        return self.token is not None or not self.config.use_nomad_token

    #
    # trigger functions
    #

    def do_exchange_credentials(self, event_data: EventData):
        self.token = self.exchanger.exchange(self.deadline)


    def do_drain_node(self, event_data: EventData):
        if self.token is not None and self.token.is_expired():
            raise self.formatter.get_error(
                AuthError,
                'Nomad token %s expired before draining %s',
                self.token.accessor or '(no accessor)',
                self.event.instance_id
            )

        drain_client = self.drain_client_factory(self.token, self.deadline)

        self.node = drain_client.resolve_node(self.event.instance_id, self.deadline)
        if self.node is None:
            self.logger.info('Instance %s is already gone from the cluster', self.event.instance_id)
            self.drain_status = DrainStatus(DrainStatus.COMPLETE, 0)
            return

        drain_client.start_drain(self.node, self.deadline)
        self.drain_status = drain_client.wait_for_drain(self.node, self.deadline, self.heartbeater)


    def do_decide_outcome(self, event_data: EventData):
        self.heartbeater.close()

        if self.drain_status is not None and self.drain_status.is_complete():
            self.outcome = LifecycleOutcome(LifecycleOutcome.COMPLETE)
            return

        self.outcome = LifecycleOutcome(LifecycleOutcome.ABANDON)
        if self.drain_status is not None and not self.drain_status.is_terminal():
            self.error = DeadlineExceeded(
                'Deadline reached while node %s is %s' % (self.node.id, self.drain_status.state)
            )

        self.logger.warning('Drain did not complete: %s. Abandoning.', self.drain_status)


    def do_report_outcome(self, event_data: EventData):
        if self.heartbeater is not None:
            self.heartbeater.close()

        if self.reported:
            raise self.formatter.get_error(
                LifecycleActionSpentError,
                'An outcome has already been reported for %s',
                self.event.to_str()
            )

        if self.outcome is None:
            self.outcome = LifecycleOutcome(LifecycleOutcome.ABANDON)

        self.logger.info('Reporting %s for %s', self.outcome.value, self.event.to_str())
        self.autoscaling.complete_lifecycle_action(
            self.event.lifecycle_hook_name,
            self.event.autoscaling_group_name,
            self.event.lifecycle_action_token,
            self.outcome.get_lifecycle_action_result(),
            self.event.instance_id
        )
        self.reported = True


class LifecycleHandler(object):
    """
    Drives a DrainModel through its transitions until no trigger applies anymore.

    Errors before the outcome is reported enter failure handling: the model is set to
    failure and moved to its failure state, from where the remaining triggers report
    the (abandon) outcome. Errors while reporting are raised.

    :type machine: Machine
    :type model: DrainModel
    """
    machine_cls = Machine
    machine = None
    model = None
    __default_trigger = {
        'name': 'default',
        'prepare': [],
        'conditions': [],
        'unless': [],
        'after': [],
        'before': [],
    }
    __default_transition = {
        'source': [],
        'dest': '',
        'triggers': [],
    }
    __illegal_trigger_names = [
        'trigger'
    ]

    #
    # initialization
    #

    def __init__(self, model: DrainModel):
        self.model = model
        self.__in_failure_handling = False
        self.machine = self.machine_cls(
            self.model,
            states = [self.model.get_initial_state()],
            initial = self.model.get_initial_state(),
            auto_transitions = False,
            send_event = True,
            queued = False
        )
        self.__add_transitions()


    def __add_transitions(self):
        self.__get_logger().debug('initializing transitions')
        destinations = []
        for config in self.model.get_transitions():
            transition = self.__default_transition.copy()
            transition.update(config)

            sources = listify(transition.pop('source'))
            dest = transition.pop('dest')
            triggers = transition.pop('triggers')

            if transition != { }:
                raise ConfigurationError(
                    'unknown options %s in transition config' % ", ".join(transition.keys()))

            if dest in destinations:
                raise ConfigurationError(
                    'Duplicate destination state %s. Multiple transitions with the same destination are not allowed.' % dest
                )
            destinations.append(dest)

            states = self.machine.states.keys()
            for state in sources + [dest]:
                if state not in states:
                    self.machine.add_state(state)

            for trigger in triggers:
                self.__add_transition(sources, dest, trigger)


    def __add_transition(self, sources: list, dest: str, config: dict):
        trigger = self.__default_trigger.copy()
        trigger.update(config)

        name = trigger.pop('name')
        if name in self.__illegal_trigger_names:
            raise ConfigurationError('trigger name %s is not allowed' % name)

        for option in ['prepare', 'conditions', 'unless', 'before', 'after']:
            if type(trigger.get(option)) is not list:
                raise ConfigurationError('%s of trigger %s is not a list' % (option, name))

        prepare = trigger.pop('prepare')
        conditions = trigger.pop('conditions')
        unless = trigger.pop('unless')
        # log the event before any other transition function
        before = [self.__log_before] + trigger.pop('before')
        after = trigger.pop('after') + [self.__log_after]

        if trigger != { }:
            raise ConfigurationError('unknown options %s for trigger %s' % (", ".join(trigger.keys()), name))

        self.machine.add_transition(
            name,
            sources,
            dest,
            prepare = prepare,
            conditions = conditions,
            unless = unless,
            before = before,
            after = after
        )

    #
    # processing
    #

    def __call__(self) -> HandlerResult:
        self.__get_logger().info('processing %s', self.model.event.to_str())

        try:
            self.model.start()
        except Exception as e:
            self.__enter_failure_handling(e)

        self.__process(self.machine.get_triggers(self.model.state))

        self.__get_logger().info('processed %s via %s', self.model.event.to_str(), ' -> '.join(self.model.passed_states))

        return self.model.get_result()


    def __process(self, triggers: list):
        try:
            while len(triggers) > 0:
                state = self.model.state
                self.__get_logger().debug('possible triggers for state %s: %s', state, triggers)
                for trigger in triggers:
                    self.__get_logger().info('pulling trigger %s', trigger)
                    self.machine.dispatch(trigger)
                    self.__get_logger().info('trigger %s complete', trigger)

                    if self.model.state != state:
                        # proceed with triggers for the updated state
                        break

                if self.model.state == state:
                    raise self.__get_formatter().get_error(
                        RuntimeError, 'No trigger could leave state %s', state
                    )

                triggers = self.machine.get_triggers(self.model.state)

        except Exception as e:
            if self.__in_failure_handling or self.model.state in self.model.get_unrecoverable_states():
                self.__get_logger().exception('An error occurred while reporting the outcome: %s', repr(e))
                raise

            self.__enter_failure_handling(e)
            self.__process(self.machine.get_triggers(self.model.state))


    def __enter_failure_handling(self, error: Exception):
        self.__get_logger().error(
            'An error occurred in state %s: %s. Entering failure handling.',
            self.model.state,
            repr(error)
        )
        self.__get_logger().debug('failure details: %s', ExceptionInfo.from_current().to_dict())
        self.__in_failure_handling = True

        self.model.set_failure(error)
        self.model.state = self.model.get_failure_state()
        self.model.passed_states.append(self.model.state)

    #
    # private built-in trigger functions
    #

    def __log_transition(self, direction: str, event_data: EventData):
        self.__get_logger().info(
            '%s from %s to %s via %s on instance %s',
            direction,
            event_data.transition.source,
            event_data.transition.dest,
            event_data.event.name,
            self.model.event.instance_id
        )


    def __log_before(self, event_data: EventData):
        self.__log_transition('Transitioning', event_data)


    def __log_after(self, event_data: EventData):
        self.model.passed_states.append(event_data.transition.dest)
        self.__log_transition('Transitioned', event_data)

    #
    # convenience methods
    #

    def __get_logger(self) -> Logger:
        return self.model.logger


    def __get_formatter(self) -> MessageFormatter:
        return self.model.formatter
