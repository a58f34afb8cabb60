"""Tests for the SSH handshake and authentication."""

from unittest.mock import MagicMock, patch

import paramiko
import pytest

from dropbear_unlock.session import (
    AuthRejectedError,
    HandshakeFailedError,
    HostKeyMismatchError,
    KeyFileError,
    Session,
    authenticate,
    load_private_key,
    verify_host_key,
)
from dropbear_unlock.transport import Connection


@pytest.fixture
def connection():
    return Connection(hostname='server.example.com', port_number=2222, sock=MagicMock())


@pytest.fixture
def transport():
    with patch('dropbear_unlock.session.paramiko.Transport') as factory:
        instance = factory.return_value
        instance.is_authenticated.return_value = True
        yield instance


@pytest.fixture
def private_key():
    with patch('dropbear_unlock.session.paramiko.PKey.from_path') as from_path:
        yield from_path.return_value


class TestAuthenticate:

    """Tests for :func:`authenticate()`."""

    def test_accepted(self, connection, transport, private_key, reporter):
        """An accepted key results in an authenticated session."""
        session = authenticate(connection, 'root', '/tmp/id_rsa', reporter=reporter, timeout=3)
        assert isinstance(session, Session)
        transport.start_client.assert_called_once_with(timeout=3)
        transport.auth_publickey.assert_called_once_with('root', private_key)
        assert reporter.lines == ["Dropbear SSH handshake ok.", "Dropbear SSH pubkey accepted!"]
        assert not connection.closed

    def test_rejected(self, connection, transport, private_key, reporter):
        """A rejected key closes the connection."""
        transport.auth_publickey.side_effect = paramiko.AuthenticationException("denied")
        transport.is_authenticated.return_value = False
        with pytest.raises(AuthRejectedError):
            authenticate(connection, 'root', '/tmp/id_rsa', reporter=reporter)
        assert "Dropbear SSH pubkey rejected." in reporter.lines
        assert transport.close.called
        assert connection.closed

    def test_handshake_failure(self, connection, transport, private_key, reporter):
        """Handshake failures are worth retrying."""
        transport.start_client.side_effect = paramiko.SSHException("Error reading SSH protocol banner")
        with pytest.raises(HandshakeFailedError):
            authenticate(connection, 'root', '/tmp/id_rsa', reporter=reporter)
        assert reporter.lines == []
        assert connection.closed

    def test_missing_key(self, connection, transport, reporter):
        """The private key is loaded before anything is sent."""
        with pytest.raises(KeyFileError):
            authenticate(connection, 'root', None, reporter=reporter)
        assert not transport.start_client.called

    def test_host_key_checked(self, connection, transport, private_key, reporter):
        """A known hosts file enables host key verification."""
        with patch('dropbear_unlock.session.verify_host_key') as verify:
            authenticate(connection, 'root', '/tmp/id_rsa', reporter=reporter, known_hosts_file='/tmp/known_hosts')
        assert verify.call_args[0][1] == '/tmp/known_hosts'


class TestLoadPrivateKey:

    """Tests for :func:`load_private_key()`."""

    def test_unreadable(self, tmp_path):
        """Unreadable key files raise KeyFileError."""
        with pytest.raises(KeyFileError):
            load_private_key(str(tmp_path / 'missing'))

    def test_garbage(self, tmp_path):
        """Files that don't contain a private key raise KeyFileError."""
        filename = tmp_path / 'id_rsa'
        filename.write_text('not a private key\n')
        with pytest.raises(KeyFileError):
            load_private_key(str(filename))


class TestVerifyHostKey:

    """Tests for :func:`verify_host_key()`."""

    def create_session(self, connection):
        transport = MagicMock()
        transport.get_remote_server_key.return_value = 'remote-key'
        return Session(connection=connection, transport=transport)

    def test_match(self, connection):
        """Matching host keys are accepted (using the non-standard port syntax)."""
        with patch('dropbear_unlock.session.paramiko.HostKeys') as factory:
            factory.return_value.check.return_value = True
            verify_host_key(self.create_session(connection), '/tmp/known_hosts')
        factory.return_value.load.assert_called_once_with('/tmp/known_hosts')
        factory.return_value.check.assert_called_once_with('[server.example.com]:2222', 'remote-key')

    def test_mismatch(self, connection):
        """Unknown host keys raise HostKeyMismatchError."""
        with patch('dropbear_unlock.session.paramiko.HostKeys') as factory:
            factory.return_value.check.return_value = False
            with pytest.raises(HostKeyMismatchError):
                verify_host_key(self.create_session(connection), '/tmp/known_hosts')

    def test_unreadable(self, connection, tmp_path):
        """An unreadable known hosts file raises HostKeyMismatchError."""
        with pytest.raises(HostKeyMismatchError):
            verify_host_key(self.create_session(connection), str(tmp_path / 'missing'))
