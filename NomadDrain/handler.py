import os
import time
from logging import StreamHandler

from boto3 import Session
from botocore.config import Config as BotoConfig

from .clients import AutoscalingClient
from .clients import ClientFactory
from .clients import NomadClient
from .clients import VaultClient
from .clients import create_session
from .config import Config
from .credentials import CredentialExchanger
from .drain import DrainClient
from .entity import DrainEvent
from .entity import HandlerResult
from .entity import LifecycleOutcome
from .exceptions import ConfigurationError
from .exceptions import EventParseError
from .lifecycle import DrainModel
from .lifecycle import LifecycleHandler
from .logging import Logging

LOGGER_NAME = 'NomadDrain'
LOG_FORMAT = '[%(levelname)s] %(name)s %(message)s'


def create_logging(level: str) -> Logging:
    logging = Logging(LOGGER_NAME, level)
    logging.add_handler(StreamHandler(), LOG_FORMAT)
    return logging


def get_invocation_limit(context):
    """
    :rtype: float
    :return: Seconds left for this invocation, None if the context does not tell
    """
    if context is None or not hasattr(context, 'get_remaining_time_in_millis'):
        return None

    return context.get_remaining_time_in_millis() / 1000.0


def create_boto_config(config: Config) -> BotoConfig:
    """
    Reporting happens after the deadline, within the safety margin. Two attempts of a connect
    and a read must fit into it, so each of them waits at most a quarter of the margin.
    """
    timeout = max(1.0, min(config.request_timeout, config.safety_margin / 4))

    return BotoConfig(
        connect_timeout = timeout,
        read_timeout = timeout,
        retries = { 'total_max_attempts': 2, 'mode': 'standard' }
    )


def build_handler(event: DrainEvent, config: Config, session: Session, logging: Logging,
                  invocation_limit: float = None, clock = time.monotonic, sleep = time.sleep) -> LifecycleHandler:
    factory = ClientFactory(session, logging)
    autoscaling = AutoscalingClient(factory.get('autoscaling', config.region, create_boto_config(config)), logging)

    vault = None
    if config.needs_vault():
        vault = VaultClient(create_session(), logging, config.vault_address, config.request_timeout)

    exchanger = CredentialExchanger(config, session, vault, logging, sleep)


    def create_drain_client(token, deadline):
        nomad = NomadClient(create_session(), logging, config.nomad_address, config.request_timeout, token, deadline)
        return DrainClient(
            nomad,
            logging,
            poll_interval = config.poll_interval,
            max_poll_failures = config.poll_max_failures,
            drain_deadline = config.drain_deadline,
            ignore_system_jobs = config.ignore_system_jobs,
            sleep = sleep
        )


    model = DrainModel(
        event,
        config,
        autoscaling,
        exchanger,
        create_drain_client,
        logging,
        invocation_limit = invocation_limit,
        clock = clock
    )

    return LifecycleHandler(model)


def abandon_lifecycle_action(autoscaling: AutoscalingClient, event: DrainEvent):
    """
    Completes the lifecycle action with the ABANDON result, for failures before the machine could be built.
    """
    autoscaling.complete_lifecycle_action(
        event.lifecycle_hook_name,
        event.autoscaling_group_name,
        event.lifecycle_action_token,
        LifecycleOutcome(LifecycleOutcome.ABANDON).get_lifecycle_action_result(),
        event.instance_id
    )


def lambda_handler(event, context, session: Session = None):
    logging = create_logging(Config.read_log_level(os.environ))
    logger = logging.get_logger()

    try:
        drain_event = DrainEvent.from_event(event)
    except EventParseError as e:
        logger.error('Cannot process event: %s. No lifecycle action will be reported.', e.get_message())
        raise

    logger.info('Instance %s is being terminated', drain_event.instance_id)

    try:
        config = Config.from_environment()
    except ConfigurationError as e:
        logger.error('Invalid configuration: %s. Abandoning %s', e.get_message(), drain_event.to_str())
        session = session or Session()
        abandon_lifecycle_action(AutoscalingClient(session.client('autoscaling'), logging), drain_event)
        return HandlerResult(drain_event, LifecycleOutcome(LifecycleOutcome.ABANDON), error = e).to_dict()

    logger.debug('Configuration loaded: %s', config.to_dict())

    session = session or Session(region_name = config.region)
    handler = build_handler(drain_event, config, session, logging, get_invocation_limit(context))
    result = handler()

    logger.info('Result: %s', result.to_dict())

    return result.to_dict()
