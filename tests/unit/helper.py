import copy
import json
import os
from unittest import mock

from NomadDrain.logging import Logging


def get_fixture(name):
    fh = open(os.path.dirname(os.path.abspath(__file__)) + '/../fixtures/' + name, 'r')
    data = json.load(fh)
    fh.close()

    return data


def get_node(node_id: str, instance_id: str, drain: bool = False) -> dict:
    node = copy.deepcopy(get_fixture('nomad_node.json'))
    node.update({ 'ID': node_id, 'Drain': drain })
    node.get('Attributes').update({ 'unique.platform.aws.instance-id': instance_id })

    return node


def create_logging() -> Logging:
    return Logging('TEST', 'DEBUG')


def response(status: int = 200, body = None):
    r = mock.Mock()
    r.status_code = status
    if body is None:
        r.content = b''
        r.text = ''
        r.json.side_effect = ValueError('No JSON object could be decoded')
    else:
        r.content = json.dumps(body).encode('utf-8')
        r.text = json.dumps(body)
        r.json.return_value = body

    return r


class FakeClock(object):
    """
    A clock that only moves when sleep() is called.
    """


    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps = []


    def __call__(self) -> float:
        return self.now


    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
