"""Pytest configuration and fixtures for the dropbear_unlock tests."""

from unittest.mock import MagicMock

import pytest

from dropbear_unlock.channel import ChannelClosedError
from dropbear_unlock.config import ConnectionTarget
from dropbear_unlock.protocol import Passphrase
from dropbear_unlock.reporting import EventLog

PROMPT = b'Please unlock disk sda5_crypt: '


class FakeChannel(object):

    """Scripted stand-in for :class:`~dropbear_unlock.channel.InteractiveChannel`.

    Each item in `chunks` is returned by one call to :func:`read()`: byte
    strings are returned as is, :data:`None` means "would block", exceptions
    are raised and callables are called (their return value is used). Once
    the script runs out the channel reports that the remote side closed it.
    """

    def __init__(self, chunks=(), echo=True):
        self.chunks = list(chunks)
        self.echo = echo
        self.written = []
        self.reads = 0
        self.closed = False

    def read(self, size):
        self.reads += 1
        if not self.chunks:
            raise ChannelClosedError("Remote side closed the channel.")
        item = self.chunks.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item()
        return item

    def read_echo(self, timeout, size=1024):
        if self.echo and self.written:
            return (self.written[-1] + '\r\n').encode('UTF-8')
        return b''

    def write_line(self, text):
        self.written.append(text)

    def close(self):
        self.closed = True


@pytest.fixture
def passphrase():
    """A passphrase with trailing whitespace (which is never sent)."""
    return Passphrase(value='hunter2 \n')


@pytest.fixture
def reporter():
    """An event log without a spinner."""
    return EventLog()


@pytest.fixture
def target():
    """A connection target for a fictional server."""
    return ConnectionTarget(
        hostname='server.example.com',
        identity_file='/home/operator/.ssh/dropbear',
        port_number=2222,
        username='root',
    )


@pytest.fixture
def config_loader():
    """A stand-in for :class:`update_dotdee.ConfigLoader` without any sections."""
    loader = MagicMock()
    loader.section_names = []
    return loader
