import logging
import os

from .entity import Secret
from .exceptions import ConfigurationError


class Config(object):
    """
    Handler configuration read from environment variables.

    NOMAD_ADDR is always required. Unless NOMAD_TOKEN is set or USE_NOMAD_TOKEN is false,
    a Nomad token is read from Vault, which requires VAULT_ADDR and NOMAD_ROLE, and
    AUTH_ROLE unless VAULT_TOKEN is set.
    """

    defaults = {
        'USE_NOMAD_TOKEN': 'true',
        'AUTH_PATH': 'aws',
        'NOMAD_PATH': 'nomad',
        'SAFETY_MARGIN': '30',
        'POLL_INTERVAL': '5',
        'HEARTBEAT_THRESHOLD': '60',
        'DRAIN_DEADLINE': '600',
        'IGNORE_SYSTEM_JOBS': 'false',
        'AUTH_MAX_ATTEMPTS': '3',
        'POLL_MAX_FAILURES': '3',
        'REQUEST_TIMEOUT': '10',
        'LOG_LEVEL': 'INFO',
    }

    __true = ['1', 'true', 'yes', 'on']
    __false = ['0', 'false', 'no', 'off']


    def __init__(self, environ: dict):
        self.environ = environ

        self.nomad_address = self.__get_str('NOMAD_ADDR', required = True)
        self.nomad_token = self.__get_secret('NOMAD_TOKEN')
        self.use_nomad_token = self.__get_bool('USE_NOMAD_TOKEN')

        self.vault_address = self.__get_str('VAULT_ADDR')
        self.vault_token = self.__get_secret('VAULT_TOKEN')
        self.auth_path = self.__get_str('AUTH_PATH')
        self.auth_role = self.__get_str('AUTH_ROLE')
        self.auth_header_value = self.__get_str('AUTH_HEADER_VALUE')
        self.nomad_path = self.__get_str('NOMAD_PATH')
        self.nomad_role = self.__get_str('NOMAD_ROLE')
        self.region = self.__get_str('AWS_REGION')

        self.safety_margin = self.__get_float('SAFETY_MARGIN', minimum = 0)
        self.poll_interval = self.__get_float('POLL_INTERVAL', minimum = 0.1)
        self.heartbeat_threshold = self.__get_float('HEARTBEAT_THRESHOLD', minimum = 0)
        self.max_heartbeats = self.__get_int('MAX_HEARTBEATS', minimum = 0)
        self.drain_deadline = self.__get_int('DRAIN_DEADLINE', minimum = 1)
        self.ignore_system_jobs = self.__get_bool('IGNORE_SYSTEM_JOBS')
        self.auth_max_attempts = self.__get_int('AUTH_MAX_ATTEMPTS', minimum = 1)
        self.poll_max_failures = self.__get_int('POLL_MAX_FAILURES', minimum = 0)
        self.request_timeout = self.__get_float('REQUEST_TIMEOUT', minimum = 0.1)
        self.log_level = self.read_log_level(environ)

        self.__validate()


    @classmethod
    def from_environment(cls, environ: dict = None):
        return cls(dict(os.environ) if environ is None else environ)


    @classmethod
    def read_log_level(cls, environ: dict) -> str:
        """
        Never fails: logging has to be set up before the rest of the configuration is validated.
        """
        level = (environ.get('LOG_LEVEL') or cls.defaults.get('LOG_LEVEL')).upper()
        if logging.getLevelName(level) == 'Level %s' % level:
            return cls.defaults.get('LOG_LEVEL')

        return level


    def needs_vault(self) -> bool:
        return self.use_nomad_token and self.nomad_token is None


    def needs_vault_login(self) -> bool:
        return self.needs_vault() and self.vault_token is None


    def to_dict(self):
        return {
            'nomad_address': self.nomad_address,
            'nomad_token': self.nomad_token,
            'use_nomad_token': self.use_nomad_token,
            'vault_address': self.vault_address,
            'vault_token': self.vault_token,
            'auth_path': self.auth_path,
            'auth_role': self.auth_role,
            'auth_header_value': self.auth_header_value,
            'nomad_path': self.nomad_path,
            'nomad_role': self.nomad_role,
            'region': self.region,
            'safety_margin': self.safety_margin,
            'poll_interval': self.poll_interval,
            'heartbeat_threshold': self.heartbeat_threshold,
            'max_heartbeats': self.max_heartbeats,
            'drain_deadline': self.drain_deadline,
            'ignore_system_jobs': self.ignore_system_jobs,
            'auth_max_attempts': self.auth_max_attempts,
            'poll_max_failures': self.poll_max_failures,
            'request_timeout': self.request_timeout,
            'log_level': self.log_level,
        }


    def __validate(self):
        if not self.needs_vault():
            return

        if self.vault_address is None:
            raise ConfigurationError('Configuration option VAULT_ADDR was expected but is missing')

        if self.nomad_role is None:
            raise ConfigurationError('Configuration option NOMAD_ROLE was expected but is missing')

        if self.needs_vault_login() and self.auth_role is None:
            raise ConfigurationError('Configuration option AUTH_ROLE was expected but is missing')


    def __get_str(self, name: str, required: bool = False):
        value = self.environ.get(name)
        if value is None or value.strip() == '':
            value = self.defaults.get(name)

        if value is None and required:
            raise ConfigurationError('Configuration option %s was expected but is missing' % name)

        return value.strip() if value is not None else None


    def __get_secret(self, name: str):
        value = self.__get_str(name)
        return Secret(value) if value is not None else None


    def __get_bool(self, name: str) -> bool:
        value = self.__get_str(name)
        if value is None:
            return False

        if value.lower() in self.__true:
            return True

        if value.lower() in self.__false:
            return False

        raise ConfigurationError('Configuration option %s is not a boolean: %s' % (name, value))


    def __get_int(self, name: str, minimum: int = None):
        return self.__get_number(name, int, minimum)


    def __get_float(self, name: str, minimum: float = None):
        return self.__get_number(name, float, minimum)


    def __get_number(self, name: str, number_type, minimum = None):
        value = self.__get_str(name)
        if value is None:
            return None

        try:
            number = number_type(value)
        except ValueError:
            raise ConfigurationError('Configuration option %s is not a valid %s: %s' % (
                name, number_type.__name__, value
            ))

        if minimum is not None and number < minimum:
            raise ConfigurationError('Configuration option %s must be at least %s: %s' % (name, minimum, value))

        return number
