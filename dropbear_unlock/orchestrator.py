# Unlock remote root disk encryption over Dropbear SSH.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""
End-to-end unlock attempts and the retry policy.

The :class:`UnlockOrchestrator` class connects to the pre-boot environment,
authenticates, starts the disk unlock helper and runs the
:class:`~dropbear_unlock.protocol.UnlockProtocol`. Because a booting system
refuses connections (or authentication) until its SSH server is ready, most
failures simply lead to a new attempt after :attr:`~UnlockOrchestrator.retry_interval`
seconds. There's no upper limit on the number of attempts: the operator can
always abort.
"""

# Standard library modules.
import logging
import threading

# External dependencies.
from humanfriendly import Timer, pluralize
from property_manager import PropertyManager, mutable_property, required_property
from verboselogs import SUCCESS, VERBOSE, VerboseLogger

# Modules included in our package.
from dropbear_unlock import RemoteUnlockError
from dropbear_unlock.channel import DEFAULT_SETTLE_DELAY, BootstrapAbortedError, ChannelClosedError, open_and_bootstrap
from dropbear_unlock.config import DEFAULT_BOOTSTRAP_COMMAND
from dropbear_unlock.protocol import (
    AUTH_REJECTED,
    CANCELLED,
    CHANNEL_CLOSED,
    CONNECTION_FAILED,
    DEFAULT_ECHO_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    UNLOCKED,
    AttemptOutcome,
    UnlockProtocol,
)
from dropbear_unlock.reporting import EventLog
from dropbear_unlock.session import AuthRejectedError, HostKeyMismatchError, KeyFileError, authenticate
from dropbear_unlock.transport import DEFAULT_CONNECT_TIMEOUT, ConnectionFailedError, connect

DEFAULT_RETRY_INTERVAL = 1
"""The time between attempts (a number of seconds)."""

# Public identifiers that require documentation.
__all__ = (
    'DEFAULT_RETRY_INTERVAL',
    'MissingPassphraseError',
    'UnlockOrchestrator',
    'logger',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


class UnlockOrchestrator(PropertyManager):

    """Unlock a remote system, retrying until the outcome is final."""

    @mutable_property
    def bootstrap_command(self):
        """The command that starts the disk unlock helper (a string)."""
        return DEFAULT_BOOTSTRAP_COMMAND

    @mutable_property(cached=True, repr=False)
    def cancel_event(self):
        """A :class:`threading.Event` that's set when the operator aborts."""
        return threading.Event()

    @mutable_property
    def connect_timeout(self):
        """The timeout for the TCP connection, SSH handshake and channel (a number of seconds)."""
        return DEFAULT_CONNECT_TIMEOUT

    @mutable_property
    def echo_timeout(self):
        """How long to wait for the echo of the passphrase (a number of seconds)."""
        return DEFAULT_ECHO_TIMEOUT

    @mutable_property
    def known_hosts_file(self):
        """The "known hosts file" used to verify the SSH server (a string or :data:`None`)."""

    @required_property(repr=False)
    def passphrase(self):
        """The :class:`~dropbear_unlock.protocol.Passphrase` owned by the caller."""

    @mutable_property
    def poll_interval(self):
        """The time between reads when no output is available (a number of seconds)."""
        return DEFAULT_POLL_INTERVAL

    @mutable_property(cached=True, repr=False)
    def reporter(self):
        """The :class:`~dropbear_unlock.reporting.EventLog` that status lines are reported to."""
        return EventLog()

    @mutable_property
    def retry_interval(self):
        """The time between attempts (a number of seconds)."""
        return DEFAULT_RETRY_INTERVAL

    @mutable_property
    def settle_delay(self):
        """The time the remote shell gets to start (a number of seconds)."""
        return DEFAULT_SETTLE_DELAY

    @required_property
    def target(self):
        """The :class:`~dropbear_unlock.config.ConnectionTarget` to unlock."""

    def unlock(self):
        """
        Keep trying to unlock the remote system until the outcome is final.

        :returns: An :class:`~dropbear_unlock.protocol.AttemptOutcome` whose
                  :attr:`~dropbear_unlock.protocol.AttemptOutcome.kind` is
                  :data:`~dropbear_unlock.protocol.UNLOCKED`,
                  :data:`~dropbear_unlock.protocol.REJECTED` (the caller
                  needs to obtain a new passphrase before calling
                  :func:`unlock()` again) or
                  :data:`~dropbear_unlock.protocol.CANCELLED`.
        :raises: :exc:`MissingPassphraseError` when :attr:`passphrase` is
                 empty, :exc:`~dropbear_unlock.session.KeyFileError` or
                 :exc:`~dropbear_unlock.session.HostKeyMismatchError`.
        """
        if not self.passphrase.is_set:
            raise MissingPassphraseError("Refusing to unlock %s without a passphrase!" % self.target)
        timer = Timer()
        attempts = 0
        while True:
            if self.cancel_event.is_set():
                return self.abort()
            attempts += 1
            logger.verbose("Starting attempt #%i to unlock %s ..", attempts, self.target)
            outcome = self.attempt()
            if outcome.kind == UNLOCKED:
                self.reporter.report(
                    "Unlocked %s on %s in %s.", pluralize(outcome.success_count, "disk"),
                    self.target.hostname, timer, level=SUCCESS,
                )
                return outcome
            if not outcome.is_retriable:
                return outcome
            # An abort during the attempt ends the sequence here.
            if self.cancel_event.is_set():
                return self.abort(outcome.message)
            self.reporter.report("Retrying...")
            if self.cancel_event.wait(self.retry_interval):
                return self.abort()

    def attempt(self):
        """
        Perform a single unlock attempt using a fresh connection.

        :returns: An :class:`~dropbear_unlock.protocol.AttemptOutcome` object.

        The channel, session and connection are closed before this method
        returns, regardless of the outcome.
        """
        connection = session = channel = None
        try:
            connection = connect(self.target.hostname, self.target.port_number, timeout=self.connect_timeout)
            session = authenticate(
                connection,
                username=self.target.username,
                identity_file=self.target.identity_file,
                reporter=self.reporter,
                known_hosts_file=self.known_hosts_file,
                timeout=self.connect_timeout,
            )
            channel = open_and_bootstrap(
                session,
                command=self.bootstrap_command,
                settle_delay=self.settle_delay,
                timeout=self.connect_timeout,
                cancel_event=self.cancel_event,
            )
            protocol = UnlockProtocol(
                cancel_event=self.cancel_event,
                channel=channel,
                echo_timeout=self.echo_timeout,
                passphrase=self.passphrase,
                poll_interval=self.poll_interval,
                reporter=self.reporter,
            )
            return protocol.run()
        except ConnectionFailedError as e:
            self.reporter.report("%s", e, level=VERBOSE)
            return AttemptOutcome(kind=CONNECTION_FAILED, message=str(e), success_count=0)
        except AuthRejectedError as e:
            return AttemptOutcome(kind=AUTH_REJECTED, message=str(e), success_count=0)
        except BootstrapAbortedError as e:
            return self.abort(str(e))
        except ChannelClosedError as e:
            return AttemptOutcome(kind=CHANNEL_CLOSED, message=str(e), success_count=0)
        except (KeyFileError, HostKeyMismatchError):
            raise
        except Exception as e:
            logger.debug("Unexpected exception during attempt!", exc_info=True)
            self.reporter.report("Error: %s", e, level=logging.ERROR)
            return AttemptOutcome(kind=CONNECTION_FAILED, message=str(e), success_count=0)
        finally:
            for resource in (channel, session, connection):
                if resource is not None:
                    resource.close()

    def abort(self, message=None):
        """Report that the operator aborted and create a :data:`~dropbear_unlock.protocol.CANCELLED` outcome."""
        self.reporter.report("Unlock sequence aborted by operator.")
        return AttemptOutcome(kind=CANCELLED, message=message, success_count=0)


class MissingPassphraseError(RemoteUnlockError):

    """Raised when an unlock is requested without a passphrase."""
