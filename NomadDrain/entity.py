import datetime
import json
import time

from .exceptions import DeadlineExceeded
from .exceptions import EventParseError


class Secret(object):
    """
    A string that never shows up in logs or reprs.
    Use reveal() where the actual value is needed, e.g. in request headers.
    """
    __slots__ = ('__value',)


    def __init__(self, value: str):
        if value is None or value == '':
            raise TypeError('secret must not be empty')

        self.__value = value


    def reveal(self) -> str:
        return self.__value


    def __str__(self):
        return '***'


    def __repr__(self):
        return 'Secret(***)'


    def __eq__(self, other):
        return isinstance(other, Secret) and other.reveal() == self.__value


    def __hash__(self):
        return hash(self.__value)


class DrainEvent(object):
    """
    The lifecycle action of a terminating instance, as delivered by EventBridge:
    {
        "version": "0",
        "id": "468fc4d2-5f1e-4f3c-a2d4-5ddc2a0b4c1e",
        "detail-type": "EC2 Instance-terminate Lifecycle Action",
        "source": "aws.autoscaling",
        "account": "123456789012",
        "time": "2019-03-11T10:12:24Z",
        "region": "eu-central-1",
        "resources": [
            "arn:aws:autoscaling:eu-central-1:123456789012:autoScalingGroup:...:autoScalingGroupName/nomad-clients"
        ],
        "detail": {
            "LifecycleActionToken": "87654321-4321-4321-4321-210987654321",
            "AutoScalingGroupName": "nomad-clients",
            "LifecycleHookName": "nomad-drain",
            "EC2InstanceId": "i-0c683c9448b801b8b",
            "LifecycleTransition": "autoscaling:EC2_INSTANCE_TERMINATING",
            "NotificationMetadata": "{\"cluster\": \"default\"}"
        }
    }
    """

    SOURCE = 'aws.autoscaling'
    TERMINATING = 'autoscaling:EC2_INSTANCE_TERMINATING'
    TEST_NOTIFICATION = 'autoscaling:TEST_NOTIFICATION'

    mandatory_detail_keys = [
        'LifecycleActionToken',
        'AutoScalingGroupName',
        'LifecycleHookName',
        'EC2InstanceId',
        'LifecycleTransition',
    ]


    def __init__(self, instance_id: str, autoscaling_group_name: str, lifecycle_hook_name: str,
                 lifecycle_action_token: str, lifecycle_transition: str = TERMINATING,
                 notification_metadata: str = None):
        self.__instance_id = instance_id
        self.__autoscaling_group_name = autoscaling_group_name
        self.__lifecycle_hook_name = lifecycle_hook_name
        self.__lifecycle_action_token = lifecycle_action_token
        self.__lifecycle_transition = lifecycle_transition
        self.__notification_metadata = notification_metadata


    @classmethod
    def from_event(cls, event: dict):
        if type(event) is not dict:
            raise EventParseError('Validation error. The event is not a dictionary.')

        if event.get('source') != cls.SOURCE:
            raise EventParseError('Validation error. Unknown event source %s.' % event.get('source'))

        detail = event.get('detail')
        if type(detail) is not dict:
            raise EventParseError('Validation error. The event has no detail.')

        if detail.get('Event') == cls.TEST_NOTIFICATION or detail.get('LifecycleTransition') == cls.TEST_NOTIFICATION:
            raise EventParseError('Ignoring test notification.')

        missing = [k for k in cls.mandatory_detail_keys if not detail.get(k)]
        if len(missing) > 0:
            raise EventParseError('Validation error. Missing event detail %s.' % ', '.join(missing))

        if detail.get('LifecycleTransition') != cls.TERMINATING:
            raise EventParseError(
                'Expecting an instance terminating event, got %s instead.' % detail.get('LifecycleTransition')
            )

        metadata = detail.get('NotificationMetadata')
        if metadata is not None and type(metadata) is not str:
            metadata = json.dumps(metadata, sort_keys = True)

        return cls(
            instance_id = detail.get('EC2InstanceId'),
            autoscaling_group_name = detail.get('AutoScalingGroupName'),
            lifecycle_hook_name = detail.get('LifecycleHookName'),
            lifecycle_action_token = detail.get('LifecycleActionToken'),
            lifecycle_transition = detail.get('LifecycleTransition'),
            notification_metadata = metadata
        )


    @property
    def instance_id(self) -> str:
        return self.__instance_id


    @property
    def autoscaling_group_name(self) -> str:
        return self.__autoscaling_group_name


    @property
    def lifecycle_hook_name(self) -> str:
        return self.__lifecycle_hook_name


    @property
    def lifecycle_action_token(self) -> str:
        return self.__lifecycle_action_token


    @property
    def lifecycle_transition(self) -> str:
        return self.__lifecycle_transition


    @property
    def notification_metadata(self) -> str:
        return self.__notification_metadata


    def to_str(self):
        return 'instance "%s" in group "%s" via hook "%s"' % (
            self.__instance_id,
            self.__autoscaling_group_name,
            self.__lifecycle_hook_name
        )


    def to_dict(self):
        # without the action token
        return {
            'instance_id': self.__instance_id,
            'autoscaling_group_name': self.__autoscaling_group_name,
            'lifecycle_hook_name': self.__lifecycle_hook_name,
            'lifecycle_transition': self.__lifecycle_transition,
            'notification_metadata': self.__notification_metadata,
        }


class FederatedIdentity(object):
    """
    Login payload for the Vault AWS auth method of type iam.
    Url and body are base64 encoded, headers map to lists of values.
    """

    def __init__(self, iam_http_request_method: str, iam_request_url: str, iam_request_body: str,
                 iam_request_headers: dict):
        self.iam_http_request_method = iam_http_request_method
        self.iam_request_url = iam_request_url
        self.iam_request_body = iam_request_body
        self.iam_request_headers = iam_request_headers


    def to_dict(self):
        return {
            'iam_http_request_method': self.iam_http_request_method,
            'iam_request_url': self.iam_request_url,
            'iam_request_body': self.iam_request_body,
            'iam_request_headers': self.iam_request_headers,
        }


class ScopedToken(object):
    """
    :type value: Secret
    :param value: The token
    :type issued_at: float
    :param issued_at: Epoch seconds
    :type lease_duration: int
    :param lease_duration: Seconds the token is valid. 0 means not leased.
    """

    def __init__(self, value: Secret, issued_at: float = None, lease_duration: int = 0, accessor: str = None):
        self.value = value
        self.issued_at = issued_at if issued_at is not None else time.time()
        self.lease_duration = lease_duration
        self.accessor = accessor


    @property
    def expires_at(self):
        if not self.lease_duration:
            return None

        return self.issued_at + self.lease_duration


    def is_expired(self, now: float = None) -> bool:
        if self.expires_at is None:
            return False

        return (now if now is not None else time.time()) >= self.expires_at


    def to_dict(self):
        return {
            'value': str(self.value),
            'accessor': self.accessor,
            'issued_at': self.issued_at,
            'lease_duration': self.lease_duration,
        }


class NodeIdentity(object):

    def __init__(self, id: str, name: str, instance_id: str):
        if id == '' or id is None:
            raise TypeError('id must not be empty')

        self.id = id
        self.name = name
        self.instance_id = instance_id


    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'instance_id': self.instance_id,
        }


class DrainStatus(object):
    PENDING = 'pending'
    DRAINING = 'draining'
    COMPLETE = 'complete'
    FAILED = 'failed'

    states = [PENDING, DRAINING, COMPLETE, FAILED]


    def __init__(self, state: str, allocations_remaining: int = None):
        if state not in self.states:
            raise TypeError('Unknown drain state %s' % state)

        self.state = state
        self.allocations_remaining = allocations_remaining


    def is_terminal(self) -> bool:
        return self.state in [self.COMPLETE, self.FAILED]


    def is_complete(self) -> bool:
        return self.state == self.COMPLETE


    def to_dict(self):
        return {
            'state': self.state,
            'allocations_remaining': self.allocations_remaining,
        }


class LifecycleOutcome(object):
    COMPLETE = 'complete'
    ABANDON = 'abandon'

    __results = {
        COMPLETE: 'CONTINUE',
        ABANDON: 'ABANDON',
    }


    def __init__(self, value: str):
        if value not in self.__results:
            raise TypeError('Unknown lifecycle outcome %s' % value)

        self.value = value


    def get_lifecycle_action_result(self) -> str:
        return self.__results.get(self.value)


    def __eq__(self, other):
        return isinstance(other, LifecycleOutcome) and other.value == self.value


    def __hash__(self):
        return hash(self.value)


    def __repr__(self):
        return 'LifecycleOutcome(%s)' % self.value


class Deadline(object):
    """
    The time budget of a single invocation.

    The deadline is the lifecycle hook's heartbeat timeout minus a safety margin, counted
    from started_at, which defaults to the moment the deadline is created. It never moves
    past the cap, which is the hook's global timeout and, if known, the remaining run time
    of the invocation itself (both minus the margin). A heartbeat restarts the hook's timer, so extend() moves
    the deadline to now + timeout - margin.

    :type clock: callable
    :param clock: A monotonic clock returning seconds
    :type started_at: float
    :param started_at: Clock reading the timeout counts from
    """

    def __init__(self, timeout: float, margin: float = 0, global_timeout: float = None,
                 invocation_limit: float = None, clock = time.monotonic, started_at: float = None):
        self.clock = clock
        self.timeout = timeout
        self.margin = margin
        self.started_at = started_at if started_at is not None else self.clock()

        caps = []
        if global_timeout is not None:
            caps.append(self.started_at + global_timeout - margin)
        if invocation_limit is not None:
            caps.append(self.started_at + invocation_limit - margin)
        self.cap = min(caps) if len(caps) > 0 else None

        self.expires_at = self.__capped(self.started_at + timeout - margin)


    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())


    def expired(self) -> bool:
        return self.clock() >= self.expires_at


    def can_extend(self) -> bool:
        return self.__capped(self.clock() + self.timeout - self.margin) > self.expires_at


    def extend(self) -> bool:
        extended = self.__capped(self.clock() + self.timeout - self.margin)
        if extended <= self.expires_at:
            return False

        self.expires_at = extended
        return True


    def ensure_not_expired(self, action: str):
        if self.expired():
            raise DeadlineExceeded('Deadline reached before %s' % action)


    def __capped(self, value: float) -> float:
        if self.cap is None:
            return value

        return min(value, self.cap)


    def to_dict(self):
        return {
            'timeout': self.timeout,
            'margin': self.margin,
            'remaining': self.remaining(),
        }


class HandlerResult(object):

    def __init__(self, event: DrainEvent, outcome: LifecycleOutcome = None, node: NodeIdentity = None,
                 drain_status: DrainStatus = None, heartbeats: int = 0, error: Exception = None):
        self.event = event
        self.outcome = outcome
        self.node = node
        self.drain_status = drain_status
        self.heartbeats = heartbeats
        self.error = error
        self.timestamp = datetime.datetime.now(datetime.timezone.utc)


    def to_dict(self):
        return {
            'instance_id': self.event.instance_id,
            'node_id': self.node.id if self.node is not None else None,
            'outcome': self.outcome.value if self.outcome is not None else None,
            'drain_state': self.drain_status.state if self.drain_status is not None else None,
            'heartbeats': self.heartbeats,
            'error': repr(self.error) if self.error is not None else None,
            'timestamp': self.timestamp.isoformat(),
        }
