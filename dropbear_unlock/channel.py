# Unlock remote root disk encryption over Dropbear SSH.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""Interactive shell channels that run the disk unlock helper."""

# Standard library modules.
import socket
import threading

# External dependencies.
import paramiko
from humanfriendly import format, format_timespan
from property_manager import PropertyManager, mutable_property, required_property
from verboselogs import VerboseLogger

# Modules included in our package.
from dropbear_unlock import RemoteUnlockError
from dropbear_unlock.config import DEFAULT_BOOTSTRAP_COMMAND
from dropbear_unlock.transport import DEFAULT_CONNECT_TIMEOUT, ConnectionFailedError

DEFAULT_SETTLE_DELAY = 1
"""The time the remote shell gets to start before the bootstrap command is sent (a number of seconds)."""

DEFAULT_WRITE_TIMEOUT = 5
"""The timeout for writing to the channel (a number of seconds)."""

# Public identifiers that require documentation.
__all__ = (
    'BootstrapAbortedError',
    'ChannelClosedError',
    'ChannelOpenError',
    'DEFAULT_SETTLE_DELAY',
    'DEFAULT_WRITE_TIMEOUT',
    'InteractiveChannel',
    'logger',
    'open_and_bootstrap',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


def open_and_bootstrap(session, command=DEFAULT_BOOTSTRAP_COMMAND, settle_delay=DEFAULT_SETTLE_DELAY,
                       timeout=DEFAULT_CONNECT_TIMEOUT, cancel_event=None):
    """
    Start the disk unlock helper in an interactive shell.

    :param session: An authenticated :class:`~dropbear_unlock.session.Session` object.
    :param command: The bootstrap command (a string).
    :param settle_delay: The time the remote shell gets to start (a number of seconds).
    :param timeout: How long to wait for the channel to open (a number of seconds).
    :param cancel_event: A :class:`threading.Event` that's set when the operator
                         aborts (optional).
    :returns: An :class:`InteractiveChannel` object in non-blocking mode.
    :raises: :exc:`ChannelOpenError` when the channel can't be opened or the
             bootstrap command can't be sent.
             :exc:`BootstrapAbortedError` when `cancel_event` is set during
             the settle delay (the bootstrap command is not sent).

    The remote shell gives no usable signal that it's ready to accept input,
    so this function simply waits for `settle_delay` seconds before it sends
    the bootstrap command.
    """
    logger.verbose("Opening interactive shell on %s:%i ..",
                   session.connection.hostname, session.connection.port_number)
    channel = None
    try:
        channel = session.open_channel(timeout=timeout)
        channel.get_pty()
        channel.invoke_shell()
    except (paramiko.SSHException, EOFError, OSError) as e:
        if channel is not None:
            channel.close()
        raise ChannelOpenError(format("Failed to start interactive shell! (%s)", e))
    wrapper = InteractiveChannel(channel=channel)
    logger.verbose("Giving remote shell %s to settle ..", format_timespan(settle_delay))
    if cancel_event is None:
        cancel_event = threading.Event()
    if cancel_event.wait(settle_delay):
        wrapper.close()
        raise BootstrapAbortedError("Unlock sequence aborted before the bootstrap command was sent.")
    logger.verbose("Running bootstrap command: %s", command)
    try:
        wrapper.write_line(command)
    except ChannelClosedError as e:
        wrapper.close()
        raise ChannelOpenError(format("Failed to send bootstrap command! (%s)", e))
    return wrapper


class InteractiveChannel(PropertyManager):

    """
    A pseudo terminal backed channel running the disk unlock helper.

    Reads never block the caller: :func:`read()` distinguishes between "no
    data available yet" (:data:`None`) and the end of the stream (which
    raises :exc:`ChannelClosedError`). The only exception is
    :func:`read_echo()` which waits (a bounded amount of time) for the remote
    terminal to echo the line that was just written.
    """

    @required_property(repr=False)
    def channel(self):
        """The underlying :class:`paramiko.Channel` object."""

    @mutable_property
    def write_timeout(self):
        """The timeout for :func:`write_line()` (a number, defaults to :data:`DEFAULT_WRITE_TIMEOUT`)."""
        return DEFAULT_WRITE_TIMEOUT

    def read(self, size):
        """
        Read available output without blocking.

        :param size: The maximum number of bytes to read (an integer).
        :returns: A byte string, which can be empty, or :data:`None` when
                  no data is available yet.
        :raises: :exc:`ChannelClosedError` when the remote side has closed
                 the stream or the connection failed.
        """
        try:
            data = self.channel.recv(size)
        except socket.timeout:
            return None
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise ChannelClosedError(format("Failed to read from channel! (%s)", e))
        if not data and (self.channel.eof_received or self.channel.closed):
            raise ChannelClosedError("Remote side closed the channel.")
        return data

    def read_echo(self, timeout, size=1024):
        """
        Wait for output (usually the echo of the line that was just written).

        :param timeout: The maximum time to wait (a number of seconds).
        :param size: The maximum number of bytes to read (an integer).
        :returns: A byte string (empty when the timeout expired).
        :raises: :exc:`ChannelClosedError` (see :func:`read()`).
        """
        self.channel.settimeout(timeout)
        try:
            return self.read(size) or b''
        finally:
            self.channel.setblocking(0)

    def write_line(self, text):
        """
        Write a line of text to the channel.

        :param text: The text to write (a string, a newline is added).
        :raises: :exc:`ChannelClosedError` when the write fails.

        The channel is left in non-blocking mode afterwards.
        """
        self.channel.settimeout(self.write_timeout)
        try:
            self.channel.sendall((text + '\n').encode('UTF-8'))
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise ChannelClosedError(format("Failed to write to channel! (%s)", e))
        finally:
            self.channel.setblocking(0)

    def close(self):
        """Close the channel."""
        self.channel.close()


class ChannelOpenError(ConnectionFailedError):

    """Raised when the interactive shell can't be started (worth retrying)."""


class ChannelClosedError(RemoteUnlockError):

    """Raised when the remote side closes the channel or the connection breaks."""


class BootstrapAbortedError(RemoteUnlockError):

    """Raised when the operator aborts while the remote shell is settling."""
