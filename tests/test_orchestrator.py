"""Tests for the retry policy of the unlock orchestrator."""

import threading
from unittest.mock import MagicMock, patch

import pytest

from dropbear_unlock.channel import BootstrapAbortedError, ChannelClosedError, ChannelOpenError
from dropbear_unlock.orchestrator import MissingPassphraseError, UnlockOrchestrator
from dropbear_unlock.protocol import (
    AUTH_REJECTED,
    CANCELLED,
    CHANNEL_CLOSED,
    CONNECTION_FAILED,
    REJECTED,
    UNLOCKED,
    Passphrase,
)
from dropbear_unlock.session import AuthRejectedError, HostKeyMismatchError, KeyFileError
from dropbear_unlock.transport import ConnectionFailedError

from conftest import PROMPT, FakeChannel


class FakeRemote(object):

    """
    Patches the connection steps of the orchestrator.

    Each item in `attempts` describes one attempt: an exception instance is
    raised by :func:`connect()` (or by the step named in a ``(step, error)``
    tuple) and a :class:`FakeChannel` is returned by ``open_and_bootstrap()``.
    """

    def __init__(self, attempts):
        self.attempts = list(attempts)
        self.connections = []
        self.sessions = []
        self.channels = []
        self.current = None

    def connect(self, hostname, port_number, timeout):
        self.current = self.attempts.pop(0)
        if isinstance(self.current, Exception):
            raise self.current
        connection = MagicMock(name='connection')
        self.connections.append(connection)
        self.raise_for('connect')
        return connection

    def authenticate(self, connection, **options):
        self.raise_for('authenticate')
        session = MagicMock(name='session')
        self.sessions.append(session)
        return session

    def open_and_bootstrap(self, session, **options):
        self.raise_for('open_and_bootstrap')
        channel = self.current if isinstance(self.current, FakeChannel) else FakeChannel()
        self.channels.append(channel)
        return channel

    def raise_for(self, step):
        if isinstance(self.current, tuple) and self.current[0] == step:
            raise self.current[1]

    def patch(self):
        return patch.multiple(
            'dropbear_unlock.orchestrator',
            connect=self.connect,
            authenticate=self.authenticate,
            open_and_bootstrap=self.open_and_bootstrap,
        )


def create_orchestrator(target, reporter, passphrase=None, **options):
    options.setdefault('retry_interval', 0)
    options.setdefault('poll_interval', 0)
    return UnlockOrchestrator(
        passphrase=passphrase or Passphrase(value='hunter2'),
        reporter=reporter,
        target=target,
        **options
    )


def test_retry_until_reachable(target, reporter):
    """Connection failures are retried until the remote system is unlocked."""
    remote = FakeRemote([
        ConnectionFailedError("Connection refused"),
        ConnectionFailedError("Connection refused"),
        FakeChannel([PROMPT, b'sda5_crypt set up successfully']),
    ])
    with remote.patch():
        outcome = create_orchestrator(target, reporter).unlock()
    assert outcome.kind == UNLOCKED
    assert outcome.success_count == 1
    assert reporter.lines.count("Retrying...") == 2
    assert remote.channels[0].written == ['hunter2']


def test_auth_rejected_is_retried(target, reporter):
    """A rejected public key leads to a new attempt."""
    remote = FakeRemote([
        ('authenticate', AuthRejectedError("rejected")),
        FakeChannel([PROMPT, b'ok']),
    ])
    with remote.patch():
        outcome = create_orchestrator(target, reporter).unlock()
    assert outcome.kind == UNLOCKED
    assert "Retrying..." in reporter.lines


def test_channel_closed_is_retried(target, reporter):
    """A channel that closes before any disk is unlocked leads to a new attempt."""
    remote = FakeRemote([
        FakeChannel([b'cryptroot-unlock: not found']),
        ('open_and_bootstrap', ChannelOpenError("Failed to start interactive shell!")),
        FakeChannel([PROMPT, b'ok']),
    ])
    with remote.patch():
        outcome = create_orchestrator(target, reporter).unlock()
    assert outcome.kind == UNLOCKED
    assert reporter.lines.count("Retrying...") == 2


def test_rejection_is_not_retried(target, reporter):
    """A refused passphrase is returned to the caller immediately."""
    remote = FakeRemote([
        FakeChannel([PROMPT, b'bad password']),
        FakeChannel([PROMPT, b'ok']),
    ])
    with remote.patch():
        outcome = create_orchestrator(target, reporter).unlock()
    assert outcome.kind == REJECTED
    assert len(remote.attempts) == 1
    assert "Retrying..." not in reporter.lines


def test_unexpected_error_is_reported_and_retried(target, reporter):
    """Unexpected exceptions are reported as errors and retried."""
    remote = FakeRemote([
        ('authenticate', ValueError("Something odd happened")),
        FakeChannel([PROMPT, b'ok']),
    ])
    with remote.patch():
        outcome = create_orchestrator(target, reporter).unlock()
    assert outcome.kind == UNLOCKED
    assert "Error: Something odd happened" in reporter.lines


@pytest.mark.parametrize('error', [
    KeyFileError("Failed to load private key!"),
    HostKeyMismatchError("The SSH host key doesn't match!"),
])
def test_fatal_errors_propagate(target, reporter, error):
    """Problems that retrying can't solve are propagated to the caller."""
    remote = FakeRemote([('authenticate', error)])
    with remote.patch():
        with pytest.raises(type(error)):
            create_orchestrator(target, reporter).unlock()
    assert remote.connections[0].close.called


def test_resources_closed_after_each_attempt(target, reporter):
    """The channel, session and connection are closed after every attempt."""
    remote = FakeRemote([
        FakeChannel([b'login']),
        FakeChannel([PROMPT, b'ok']),
    ])
    with remote.patch():
        create_orchestrator(target, reporter).unlock()
    assert all(channel.closed for channel in remote.channels)
    assert all(session.close.called for session in remote.sessions)
    assert all(connection.close.called for connection in remote.connections)
    assert len(remote.channels) == 2


def test_missing_passphrase(target, reporter):
    """An empty passphrase is refused before connecting."""
    remote = FakeRemote([])
    with remote.patch():
        with pytest.raises(MissingPassphraseError):
            create_orchestrator(target, reporter, passphrase=Passphrase()).unlock()
    assert remote.connections == []


def test_cancelled_before_first_attempt(target, reporter):
    """No connection is made when the operator already aborted."""
    event = threading.Event()
    event.set()
    remote = FakeRemote([FakeChannel([PROMPT, b'ok'])])
    with remote.patch():
        outcome = create_orchestrator(target, reporter, cancel_event=event).unlock()
    assert outcome.kind == CANCELLED
    assert remote.connections == []


def test_cancelled_during_backoff(target, reporter):
    """Cancellation interrupts the wait between attempts."""
    event = threading.Event()
    remote = FakeRemote([
        ConnectionFailedError("Connection refused"),
        FakeChannel([PROMPT, b'ok']),
    ])
    timer = threading.Timer(0.1, event.set)
    timer.start()
    try:
        with remote.patch():
            orchestrator = create_orchestrator(target, reporter, cancel_event=event, retry_interval=60)
            outcome = orchestrator.unlock()
    finally:
        timer.cancel()
    assert outcome.kind == CANCELLED
    assert len(remote.attempts) == 1


def test_attempt_outcomes(target, reporter):
    """Single attempts map failures to outcome kinds."""
    orchestrator = create_orchestrator(target, reporter)
    remote = FakeRemote([
        ConnectionFailedError("Connection refused"),
        ('authenticate', AuthRejectedError("rejected")),
        ('open_and_bootstrap', ChannelClosedError("closed")),
        FakeChannel([]),
    ])
    with remote.patch():
        assert orchestrator.attempt().kind == CONNECTION_FAILED
        assert orchestrator.attempt().kind == AUTH_REJECTED
        assert orchestrator.attempt().kind == CHANNEL_CLOSED
        assert orchestrator.attempt().kind == CHANNEL_CLOSED


def test_cancelled_during_attempt(target, reporter):
    """An abort while an attempt runs ends the sequence without announcing a retry."""
    event = threading.Event()

    def slow_connect(hostname, port_number, timeout):
        event.set()
        raise ConnectionFailedError("timed out")

    with patch('dropbear_unlock.orchestrator.connect', slow_connect):
        outcome = create_orchestrator(target, reporter, cancel_event=event).unlock()
    assert outcome.kind == CANCELLED
    assert outcome.message == "timed out"
    assert "Retrying..." not in reporter.lines
    assert reporter.lines[-1] == "Unlock sequence aborted by operator."


def test_cancelled_during_settle_delay(target, reporter):
    """An abort while the remote shell settles doesn't lead to another attempt."""
    event = threading.Event()
    remote = FakeRemote([('open_and_bootstrap', BootstrapAbortedError("aborted"))])
    with remote.patch():
        outcome = create_orchestrator(target, reporter, cancel_event=event).unlock()
    assert outcome.kind == CANCELLED
    assert remote.attempts == []
    assert "Retrying..." not in reporter.lines
    assert all(connection.close.called for connection in remote.connections)
