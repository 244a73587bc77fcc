"""
Shared fixtures: a kubectl stand-in, a fake port-forward process, a mock logger.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from pgwd.errors import KubectlError, KubectlNotFound


class FakeKubectl:
    """
    Answers kubectl calls from a table keyed by a substring of the joined args.
    Unknown calls fail like a real kubectl error. Values may be exceptions.
    """

    def __init__(self, responses=None, available=True, process=None):
        self.responses = responses or {}
        self.available = available
        self.process = process
        self.calls = []
        self.spawned = []

    def check_available(self):
        if not self.available:
            raise KubectlNotFound('kubectl not found in PATH (required for --kube-postgres)')
        return '/usr/local/bin/kubectl'

    async def run(self, *args):
        self.calls.append(args)
        joined = ' '.join(args)
        for key, value in self.responses.items():
            if key in joined:
                if isinstance(value, BaseException):
                    raise value
                return value
        raise KubectlError(f'kubectl {args[0]} exited with 1', {'args': list(args)})

    async def spawn(self, *args):
        self.spawned.append(args)
        return self.process


def make_process(returncode=None):
    """Fake asyncio.subprocess.Process; kill/terminate mark it exited."""
    proc = MagicMock()
    proc.returncode = returncode

    def _exit(code):
        def _inner():
            proc.returncode = code
        return _inner

    proc.kill = MagicMock(side_effect=_exit(-9))
    proc.terminate = MagicMock(side_effect=_exit(-15))
    proc.wait = AsyncMock(side_effect=lambda: proc.returncode)
    return proc


@pytest.fixture
def mock_logger():
    return MagicMock()


@pytest.fixture
def fake_process():
    return make_process()


@pytest.fixture
def kubectl_factory(fake_process):
    def _factory(responses=None, available=True):
        return FakeKubectl(responses=responses, available=available, process=fake_process)
    return _factory


@pytest.fixture
def process_factory():
    return make_process
