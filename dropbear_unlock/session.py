# Unlock remote root disk encryption over Dropbear SSH.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""
SSH handshake and public key authentication.

The :func:`authenticate()` function turns a :class:`~dropbear_unlock.transport.Connection`
into an authenticated :class:`Session`. Failures are classified so that the
caller can decide whether retrying makes sense:

- :exc:`HandshakeFailedError` and :exc:`AuthRejectedError` are expected while
  the pre-boot environment is still starting up and are worth retrying.
- :exc:`KeyFileError` and :exc:`HostKeyMismatchError` won't go away by
  themselves, retrying would be pointless.
"""

# External dependencies.
import paramiko
from humanfriendly import compact, format
from property_manager import PropertyManager, required_property
from verboselogs import VerboseLogger

# Modules included in our package.
from dropbear_unlock import RemoteUnlockError
from dropbear_unlock.reporting import EventLog
from dropbear_unlock.transport import DEFAULT_CONNECT_TIMEOUT, ConnectionFailedError

# Public identifiers that require documentation.
__all__ = (
    'AuthRejectedError',
    'HandshakeFailedError',
    'HostKeyMismatchError',
    'KeyFileError',
    'Session',
    'authenticate',
    'load_private_key',
    'logger',
    'verify_host_key',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


def authenticate(connection, username, identity_file, reporter=None,
                 known_hosts_file=None, timeout=DEFAULT_CONNECT_TIMEOUT):
    """
    Perform the SSH handshake and authenticate using a private key.

    :param connection: A :class:`~dropbear_unlock.transport.Connection` object.
    :param username: The username to log in with (a string).
    :param identity_file: The pathname of the private key (a string).
    :param reporter: An :class:`~dropbear_unlock.reporting.EventLog` object.
    :param known_hosts_file: The pathname of a "known hosts file" used to
                             verify the server's host key (a string or
                             :data:`None` to skip host key verification).
    :param timeout: The timeout for the SSH handshake (a number of seconds).
    :returns: An authenticated :class:`Session` object.
    :raises: :exc:`HandshakeFailedError`, :exc:`AuthRejectedError`,
             :exc:`KeyFileError` or :exc:`HostKeyMismatchError`.

    The connection is closed when authentication fails.
    """
    reporter = reporter or EventLog()
    key = load_private_key(identity_file)
    session = Session(connection=connection, transport=paramiko.Transport(connection.sock))
    try:
        try:
            session.transport.start_client(timeout=timeout)
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise HandshakeFailedError(format(
                "SSH handshake with %s:%i failed! (%s)",
                connection.hostname, connection.port_number, e,
            ))
        reporter.report("Dropbear SSH handshake ok.")
        if known_hosts_file:
            verify_host_key(session, known_hosts_file)
        else:
            logger.verbose("Skipping host key verification (no known hosts file given).")
        try:
            session.transport.auth_publickey(username, key)
        except paramiko.AuthenticationException as e:
            logger.verbose("Public key authentication failed: %s", e)
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise HandshakeFailedError(format(
                "Connection to %s:%i dropped during authentication! (%s)",
                connection.hostname, connection.port_number, e,
            ))
        if not session.transport.is_authenticated():
            reporter.report("Dropbear SSH pubkey rejected.")
            raise AuthRejectedError(format(
                "Server %s:%i rejected public key authentication as %s!",
                connection.hostname, connection.port_number, username,
            ))
        reporter.report("Dropbear SSH pubkey accepted!")
        return session
    except Exception:
        session.close()
        raise


def load_private_key(filename):
    """
    Load a private key from a file.

    :param filename: The pathname of the private key (a string).
    :returns: A :class:`paramiko.PKey` object.
    :raises: :exc:`KeyFileError` when the key can't be loaded. Keys
             protected by a passphrase are not supported.
    """
    if not filename:
        raise KeyFileError("No private key configured!")
    logger.verbose("Loading private key from %s ..", filename)
    try:
        return paramiko.PKey.from_path(filename)
    except Exception as e:
        raise KeyFileError(format("Failed to load private key from %s! (%s)", filename, e))


def verify_host_key(session, known_hosts_file):
    """
    Verify the SSH server's host key against a "known hosts file".

    :param session: A :class:`Session` whose handshake has completed.
    :param known_hosts_file: The pathname of the "known hosts file" (a string).
    :raises: :exc:`HostKeyMismatchError` when the file can't be read or
             doesn't contain the server's host key.
    """
    connection = session.connection
    if connection.port_number == 22:
        name = connection.hostname
    else:
        name = format('[%s]:%i', connection.hostname, connection.port_number)
    host_keys = paramiko.HostKeys()
    try:
        host_keys.load(known_hosts_file)
    except IOError as e:
        raise HostKeyMismatchError(format("Failed to read known hosts file %s! (%s)", known_hosts_file, e))
    if not host_keys.check(name, session.transport.get_remote_server_key()):
        raise HostKeyMismatchError(compact("""
            The SSH host key of {name} doesn't match the known hosts file {filename}!
            Could it be that you're accidentally connecting to the post-boot environment?
        """, name=name, filename=known_hosts_file))
    logger.verbose("Matched SSH host key of %s in %s.", name, known_hosts_file)


class Session(PropertyManager):

    """An SSH session with the pre-boot environment (used for a single attempt)."""

    @required_property
    def connection(self):
        """The underlying :class:`~dropbear_unlock.transport.Connection` object."""

    @required_property(repr=False)
    def transport(self):
        """The :class:`paramiko.Transport` object that runs the SSH protocol."""

    def open_channel(self, timeout=DEFAULT_CONNECT_TIMEOUT):
        """
        Open a new session channel.

        :param timeout: How long to wait for the channel (a number of seconds).
        :returns: A :class:`paramiko.Channel` object.
        """
        return self.transport.open_session(timeout=timeout)

    def close(self):
        """Close the SSH session and the underlying connection."""
        logger.debug("Closing SSH session with %s:%i ..", self.connection.hostname, self.connection.port_number)
        self.transport.close()
        self.connection.close()


class HandshakeFailedError(ConnectionFailedError):

    """Raised when the SSH handshake fails (the SSH server may not be ready yet)."""


class AuthRejectedError(RemoteUnlockError):

    """Raised when the SSH server rejects the private key (the SSH server may not be ready yet)."""


class KeyFileError(RemoteUnlockError):

    """Raised when the private key can't be loaded."""


class HostKeyMismatchError(RemoteUnlockError):

    """Raised when the SSH host key doesn't match the known hosts file."""
