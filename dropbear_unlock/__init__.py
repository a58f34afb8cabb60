# Unlock remote root disk encryption over Dropbear SSH.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""The top level :mod:`dropbear_unlock` module."""

# External dependencies.
from verboselogs import VerboseLogger

# Public identifiers that require documentation.
__all__ = (
    'RemoteUnlockError',
    '__version__',
    'logger',
)

# Semi-standard module versioning.
__version__ = '1.0'
"""The global version number of the `dropbear-unlock` package (a string)."""

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


class RemoteUnlockError(Exception):

    """Base class for custom exceptions raised by :mod:`dropbear_unlock`."""
