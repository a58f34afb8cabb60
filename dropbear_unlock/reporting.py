# Unlock remote root disk encryption over Dropbear SSH.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""Status reporting from the unlock sequence to the operator."""

# Standard library modules.
import logging

# External dependencies.
from humanfriendly import format
from property_manager import PropertyManager, lazy_property, mutable_property
from verboselogs import VerboseLogger

# Public identifiers that require documentation.
__all__ = (
    'EventLog',
    'logger',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


class EventLog(PropertyManager):

    """
    An append-only sequence of human readable status lines.

    Each line that's reported is added to :attr:`lines` and emitted through
    :data:`logger` so that it shows up on the terminal (and in the system
    log). The event log is purely informational: nothing in the unlock
    sequence makes decisions based on its contents.

    When :attr:`spinner` is set, :func:`tick()` animates it and
    :func:`report()` clears it before a line is logged, so that the two
    don't garble each other's output.
    """

    @lazy_property
    def lines(self):
        """The status lines reported so far (a list of strings)."""
        return []

    @mutable_property
    def spinner(self):
        """A :class:`humanfriendly.Spinner` object (or :data:`None`)."""

    def report(self, message, *args, **options):
        """
        Append a status line to the event log.

        :param message: The status line (a string, optionally containing
                        ``%`` style placeholders for `args`).
        :param args: Positional arguments to interpolate into `message`.
        :param level: The logging level (an integer, defaults to
                      :data:`logging.INFO`).
        """
        text = format(message, *args) if args else message
        if self.spinner:
            self.spinner.clear()
        self.lines.append(text)
        logger.log(options.get('level', logging.INFO), "%s", text)

    def tick(self):
        """Refresh :attr:`spinner` (when it's set)."""
        if self.spinner:
            self.spinner.step()
