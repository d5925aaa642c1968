import datetime
import json
import logging

from .entity import Secret


class MessageFormatter(object):
    """
    Formats log and error messages of a single invocation.

    Messages are prefixed with the logger name. Arguments that are not strings are
    rendered as JSON, entities via their to_dict() and secrets as ***.
    """


    def __init__(self, name: str = ''):
        self.name = name


    def format(self, message: str, args) -> str:
        return ('%s: ' + message) % ((self.name,) + self.format_args(args))


    def format_args(self, args) -> tuple:
        if args is None or (isinstance(args, (tuple, list)) and len(args) == 0):
            return tuple()

        if not isinstance(args, (tuple, list)):
            args = [args]

        return tuple([arg if type(arg) is str else self.__safe_str(arg) for arg in args])


    def to_str(self, data) -> str:
        if isinstance(data, Secret):
            return str(data)

        return json.dumps(data, sort_keys = True, ensure_ascii = True, default = self.__json_convert)


    def get_error(self, error_type, message: str, *args):
        """
        Returns an error that can directly be raised

        :type error_type: class
        :param error_type: The error type, usually a BaseError

        :type message: str
        :param message: The message with placeholders

        :rtype Exception
        :return: The error object
        """
        return error_type(self.format(message, args))


    def __safe_str(self, arg) -> str:
        try:
            return self.to_str(arg)
        except (TypeError, ValueError):
            return repr(arg)


    def __json_convert(self, o):
        if isinstance(o, Secret):
            return str(o)

        if isinstance(o, datetime.datetime):
            return o.isoformat()

        if hasattr(o, 'to_dict'):
            return o.to_dict()

        return repr(o)


class Logging(object):
    """
    Owns the named logger of the handler and its message formatter.

    :type name: str
    :param name: Logger name, also the prefix of every message
    :type level: str
    :param level: A level name like INFO
    """


    def __init__(self, name: str, level: str):
        self.formatter = MessageFormatter(name)

        # the lambda runtime installs its own handler on the root logger
        self.__remove_handlers(logging.getLogger())

        self.logger = logging.getLogger(name)
        self.__remove_handlers(self.logger)
        self.logger.setLevel(level)


    def add_handler(self, handler: logging.Handler, log_format: str):
        formatter = Formatter(log_format)
        formatter.set_formatter(self.formatter)
        handler.setFormatter(formatter)
        handler.setLevel(logging.DEBUG)
        self.logger.addHandler(handler)


    def get_logger(self) -> logging.Logger:
        return self.logger


    def get_formatter(self) -> MessageFormatter:
        return self.formatter


    @staticmethod
    def __remove_handlers(logger: logging.Logger):
        for handler in list(logger.handlers):
            logger.removeHandler(handler)


class Formatter(logging.Formatter):
    """
    :type formatter: MessageFormatter
    :param formatter: Renders the record's arguments
    """
    formatter = None


    def set_formatter(self, formatter: MessageFormatter):
        self.formatter = formatter


    def format(self, record):
        if self.formatter is None:
            raise RuntimeError("No formatter is set")

        record.args = self.formatter.format_args(record.args)

        return super().format(record)
