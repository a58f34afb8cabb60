# Unlock remote root disk encryption over Dropbear SSH.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""TCP connections to the SSH server in the pre-boot environment."""

# Standard library modules.
import socket

# External dependencies.
from humanfriendly import format
from property_manager import PropertyManager, key_property, mutable_property, required_property
from verboselogs import VerboseLogger

# Modules included in our package.
from dropbear_unlock import RemoteUnlockError

DEFAULT_CONNECT_TIMEOUT = 10
"""The default timeout for establishing connections (a number of seconds)."""

# Public identifiers that require documentation.
__all__ = (
    'Connection',
    'ConnectionFailedError',
    'DEFAULT_CONNECT_TIMEOUT',
    'connect',
    'logger',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


def connect(hostname, port_number, timeout=DEFAULT_CONNECT_TIMEOUT):
    """
    Open a TCP connection to a remote system.

    :param hostname: The host name or IP address of the remote system (a string).
    :param port_number: The port number of the SSH server (an integer).
    :param timeout: The connect timeout (a number of seconds).
    :returns: A :class:`Connection` object.
    :raises: :exc:`ConnectionFailedError` when the connection is refused, the
             host is unreachable or the timeout expires. These conditions
             are expected while the remote system is booting, so callers are
             supposed to retry.

    The socket keeps the connect timeout, :class:`paramiko.Transport` sets
    its own socket timeout when it takes over the connection. Reads from the
    remote shell are made non-blocking by
    :class:`~dropbear_unlock.channel.InteractiveChannel` instead.
    """
    logger.verbose("Connecting to %s:%i ..", hostname, port_number)
    try:
        sock = socket.create_connection((hostname, port_number), timeout)
    except (OSError, OverflowError) as e:
        raise ConnectionFailedError(format("Failed to connect to %s:%i! (%s)", hostname, port_number, e))
    logger.verbose("Connected to %s:%i.", hostname, port_number)
    return Connection(hostname=hostname, port_number=port_number, sock=sock)


class Connection(PropertyManager):

    """A TCP connection to the SSH server in the pre-boot environment."""

    @key_property
    def hostname(self):
        """The host name or IP address of the remote system (a string)."""

    @key_property
    def port_number(self):
        """The port number of the SSH server (an integer)."""

    @required_property(repr=False)
    def sock(self):
        """The connected :class:`socket.socket` object."""

    @mutable_property
    def closed(self):
        """:data:`True` once :func:`close()` has been called, :data:`False` before."""
        return False

    def close(self):
        """Close the connection (calling this more than once is harmless)."""
        if not self.closed:
            logger.debug("Closing connection to %s:%i ..", self.hostname, self.port_number)
            self.sock.close()
            self.closed = True


class ConnectionFailedError(RemoteUnlockError):

    """Raised when the remote system can't be reached (always worth retrying)."""
