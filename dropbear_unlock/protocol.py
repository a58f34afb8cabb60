# Unlock remote root disk encryption over Dropbear SSH.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""
The text driven protocol that feeds the passphrase to the disk unlock helper.

The :class:`UnlockProtocol` class watches the output of ``cryptroot-unlock``
running in an :class:`~dropbear_unlock.channel.InteractiveChannel` and moves
through the following states:

:data:`AWAITING_PROMPT`
  Output is reported to the operator until :data:`PROMPT_MARKER` shows up.

:data:`PROMPT_SEEN` and :data:`PASSPHRASE_SENT`
  The passphrase is written to the channel, after which the echo of the line
  that was just written is drained so that it can't be mistaken for a result.

:data:`AWAITING_RESULT`
  Output containing one of the :data:`REJECTION_MARKERS` means the passphrase
  was refused. Any other output means a disk was unlocked, after which the
  protocol goes back to :data:`AWAITING_PROMPT` because the helper prompts
  once for every encrypted volume.

:data:`FINISHED`
  The run ended, :func:`UnlockProtocol.run()` has returned an
  :class:`AttemptOutcome`.
"""

# Standard library modules.
import logging
import threading
import time

# External dependencies.
from humanfriendly import pluralize
from property_manager import PropertyManager, key_property, mutable_property, required_property
from verboselogs import VerboseLogger

# Modules included in our package.
from dropbear_unlock.channel import ChannelClosedError
from dropbear_unlock.reporting import EventLog

PROMPT_MARKER = 'Please unlock'
"""The text that indicates the disk unlock helper is asking for the passphrase (a string)."""

REJECTION_MARKERS = ('bad', 'maximum')
"""Texts that indicate the passphrase was refused (a tuple of strings)."""

BUFFER_SIZE = 1024
"""The maximum number of bytes read from the channel at once (an integer)."""

DEFAULT_POLL_INTERVAL = 0.01
"""The time between non-blocking reads when no output is available (a number of seconds)."""

DEFAULT_ECHO_TIMEOUT = 1
"""How long to wait for the echo of the passphrase line (a number of seconds)."""

AWAITING_PROMPT = 'awaiting-prompt'
PROMPT_SEEN = 'prompt-seen'
PASSPHRASE_SENT = 'passphrase-sent'
AWAITING_RESULT = 'awaiting-result'
FINISHED = 'finished'

UNLOCKED = 'unlocked'
"""Outcome: at least one disk was unlocked before the remote side closed the channel."""

REJECTED = 'rejected'
"""Outcome: the passphrase was refused, a new passphrase is required."""

CHANNEL_CLOSED = 'channel-closed'
"""Outcome: the remote side closed the channel before any disk was unlocked."""

CONNECTION_FAILED = 'connection-failed'
"""Outcome: the remote system couldn't be reached."""

AUTH_REJECTED = 'auth-rejected'
"""Outcome: the SSH server rejected the private key."""

CANCELLED = 'cancelled'
"""Outcome: the operator aborted the unlock sequence."""

RETRIABLE_OUTCOMES = frozenset([CHANNEL_CLOSED, CONNECTION_FAILED, AUTH_REJECTED])
"""The outcomes that cause a new attempt to be started automatically."""

# Public identifiers that require documentation.
__all__ = (
    'AUTH_REJECTED',
    'AWAITING_PROMPT',
    'AWAITING_RESULT',
    'AttemptOutcome',
    'BUFFER_SIZE',
    'CANCELLED',
    'CHANNEL_CLOSED',
    'CONNECTION_FAILED',
    'DEFAULT_ECHO_TIMEOUT',
    'DEFAULT_POLL_INTERVAL',
    'FINISHED',
    'PASSPHRASE_SENT',
    'PROMPT_MARKER',
    'PROMPT_SEEN',
    'Passphrase',
    'REJECTED',
    'REJECTION_MARKERS',
    'RETRIABLE_OUTCOMES',
    'UNLOCKED',
    'UnlockProtocol',
    'logger',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


class UnlockProtocol(PropertyManager):

    """
    State machine that unlocks the disks of a single attempt.

    A protocol object is used for one run over one channel. All state lives
    in :attr:`state` and :attr:`success_count`, which makes it possible to
    feed output to :func:`handle_output()` directly.
    """

    @mutable_property(cached=True, repr=False)
    def cancel_event(self):
        """A :class:`threading.Event` that's set when the operator aborts."""
        return threading.Event()

    @required_property(repr=False)
    def channel(self):
        """The :class:`~dropbear_unlock.channel.InteractiveChannel` to interact with."""

    @mutable_property
    def echo_timeout(self):
        """How long to wait for the echo of the passphrase (a number, defaults to :data:`DEFAULT_ECHO_TIMEOUT`)."""
        return DEFAULT_ECHO_TIMEOUT

    @required_property(repr=False)
    def passphrase(self):
        """The :class:`Passphrase` to feed to the disk unlock helper."""

    @mutable_property
    def poll_interval(self):
        """The time between reads when no output is available (a number, defaults to :data:`DEFAULT_POLL_INTERVAL`)."""
        return DEFAULT_POLL_INTERVAL

    @mutable_property(cached=True, repr=False)
    def reporter(self):
        """The :class:`~dropbear_unlock.reporting.EventLog` that status lines are reported to."""
        return EventLog()

    @mutable_property(cached=True)
    def state(self):
        """The current state (a string, starts out as :data:`AWAITING_PROMPT`)."""
        return AWAITING_PROMPT

    @mutable_property(cached=True)
    def success_count(self):
        """The number of disks unlocked so far (an integer)."""
        return 0

    @property
    def cancelled(self):
        """:data:`True` when :attr:`cancel_event` has been set, :data:`False` otherwise."""
        return self.cancel_event.is_set()

    def run(self):
        """
        Interact with the disk unlock helper until the run ends.

        :returns: An :class:`AttemptOutcome` object whose
                  :attr:`~AttemptOutcome.kind` is :data:`UNLOCKED`,
                  :data:`REJECTED`, :data:`CHANNEL_CLOSED` or
                  :data:`CANCELLED`.

        The cancellation event is checked once per iteration of the loop,
        before reading from the channel, so an abort takes effect within
        one poll interval.
        """
        logger.verbose("Waiting for unlock prompt ..")
        while True:
            if self.cancelled:
                self.reporter.report("Unlock sequence aborted by operator.")
                return self.finish(CANCELLED)
            self.reporter.tick()
            try:
                data = self.channel.read(BUFFER_SIZE)
                if data is None:
                    time.sleep(self.poll_interval)
                elif data:
                    outcome = self.handle_output(data)
                    if outcome is not None:
                        return outcome
            except ChannelClosedError as e:
                return self.handle_closure(e)

    def handle_output(self, data):
        """
        Process a chunk of output from the disk unlock helper.

        :param data: The output (a byte string).
        :returns: An :class:`AttemptOutcome` when the run ended, :data:`None` otherwise.
        :raises: :exc:`~dropbear_unlock.channel.ChannelClosedError` when
                 writing the passphrase fails.
        """
        text = data.decode('UTF-8', 'replace')
        if self.state == AWAITING_RESULT:
            if any(marker in text for marker in REJECTION_MARKERS):
                self.reporter.report("Incorrect passphrase, the remote system refused it!", level=logging.WARNING)
                return self.finish(REJECTED)
            self.success_count += 1
            self.reporter.report("%i Disk unlocked!", self.success_count)
            self.state = AWAITING_PROMPT
        self.report_output(text)
        if self.state == AWAITING_PROMPT and PROMPT_MARKER in text and not self.cancelled:
            self.state = PROMPT_SEEN
            self.send_passphrase()

    def send_passphrase(self):
        """Write the passphrase to the channel and drain its echo."""
        logger.verbose("Detected unlock prompt, sending passphrase ..")
        self.channel.write_line(self.passphrase.value.rstrip())
        self.state = PASSPHRASE_SENT
        echo = self.channel.read_echo(self.echo_timeout, BUFFER_SIZE)
        logger.debug("Discarded %s of echoed input.", pluralize(len(echo), "byte"))
        self.state = AWAITING_RESULT

    def handle_closure(self, error):
        """
        Decide the outcome of a run that ended because the channel closed.

        :param error: The :exc:`~dropbear_unlock.channel.ChannelClosedError`.
        :returns: An :class:`AttemptOutcome` object.

        Clean end of stream, connection resets and other transport errors are
        all handled the same way here, what matters is whether any disk was
        unlocked before the channel closed.
        """
        logger.verbose("Channel closed in state '%s': %s", self.state, error)
        if self.success_count > 0:
            return self.finish(UNLOCKED, message=str(error))
        self.reporter.report("Remote side closed the channel before any disk was unlocked.")
        return self.finish(CHANNEL_CLOSED, message=str(error))

    def report_output(self, text):
        """Report remote output to the operator (without ever revealing the passphrase)."""
        secret = self.passphrase.value.rstrip()
        for line in text.splitlines():
            line = line.strip()
            if line:
                if secret and secret in line:
                    line = line.replace(secret, '*' * len(secret))
                self.reporter.report(line)

    def finish(self, kind, message=None):
        """Enter the :data:`FINISHED` state and create an :class:`AttemptOutcome`."""
        self.state = FINISHED
        return AttemptOutcome(kind=kind, message=message, success_count=self.success_count)


class AttemptOutcome(PropertyManager):

    """The outcome of an unlock attempt."""

    @key_property
    def kind(self):
        """One of :data:`UNLOCKED`, :data:`REJECTED`, :data:`CHANNEL_CLOSED`, :data:`CONNECTION_FAILED`, :data:`AUTH_REJECTED` or :data:`CANCELLED`."""

    @key_property
    def success_count(self):
        """The number of disks unlocked during the attempt (an integer)."""
        return 0

    @mutable_property
    def message(self):
        """Details about the outcome (a string or :data:`None`)."""

    @property
    def is_retriable(self):
        """:data:`True` when a new attempt should be started automatically, :data:`False` otherwise."""
        return self.kind in RETRIABLE_OUTCOMES

    @property
    def is_success(self):
        """:data:`True` when the remote system was unlocked, :data:`False` otherwise."""
        return self.kind == UNLOCKED


class Passphrase(PropertyManager):

    """
    The passphrase that unlocks the disks of the remote system.

    The value is excluded from :func:`repr()` so that it doesn't end up in
    log messages by accident. After the remote system refuses the passphrase
    the owner is expected to :func:`clear()` it and obtain a new one.
    """

    @mutable_property(repr=False)
    def value(self):
        """The passphrase (a string, empty when no passphrase is available)."""
        return ''

    @property
    def is_set(self):
        """:data:`True` when a passphrase is available, :data:`False` otherwise."""
        return bool(self.value)

    def clear(self):
        """Discard the passphrase."""
        self.value = ''
