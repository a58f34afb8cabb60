# Unlock remote root disk encryption over Dropbear SSH.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""
Configuration handling for :mod:`dropbear_unlock`.

The connection target and the timing options used by the unlock sequence can
come from three places, in order of precedence:

1. The command line (a ``user@host:port`` expression or the name of a
   configuration section, optionally combined with ``--identity-file``).

2. A configuration section loaded using :class:`update_dotdee.ConfigLoader`,
   for example ``~/.config/dropbear-unlock.ini`` containing::

    [server]
    pre-boot = root@server.example.com:2222
    identity-file = ~/.ssh/dropbear
    retry-interval = 5s

3. The environment variables ``$DROPBEAR_SSH_HOST``, ``$DROPBEAR_SSH_PORT``,
   ``$DROPBEAR_SSH_PRV_RSA`` and ``$DROPBEAR_SSH_USER``. A ``.env`` file in
   the working directory is consulted as well, but variables that are already
   set in the environment take precedence over the ``.env`` file.
"""

# Standard library modules.
import os
import re

# External dependencies.
from dotenv import dotenv_values
from humanfriendly import compact, format, parse_path, parse_timespan
from property_manager import PropertyManager, key_property, lazy_property, mutable_property
from update_dotdee import ConfigLoader
from verboselogs import VerboseLogger

PROGRAM_NAME = 'dropbear-unlock'
"""The program name used to find configuration files (a string)."""

EXPRESSION_PATTERN = re.compile(r'''
    ^ ( (?P<user> [^@]+ ) @ )?
    (?P<host> .+? )
    ( : (?P<port> \d+ ) )? $
''', re.VERBOSE)
"""A compiled regular expression pattern to parse connection target expressions."""

DEFAULT_PORT = 22
"""The default port number of the SSH server in the pre-boot environment (an integer)."""

DEFAULT_USERNAME = 'root'
"""The default username used to log in to the pre-boot environment (a string)."""

DEFAULT_BOOTSTRAP_COMMAND = 'cryptroot-unlock'
"""The command that starts the disk unlock helper in the pre-boot environment (a string)."""

DEFAULT_ENV_FILE = '.env'
"""The filename of the ``.env`` file that supplements the environment (a string)."""

HOST_VARIABLE = 'DROPBEAR_SSH_HOST'
PORT_VARIABLE = 'DROPBEAR_SSH_PORT'
IDENTITY_VARIABLE = 'DROPBEAR_SSH_PRV_RSA'
USER_VARIABLE = 'DROPBEAR_SSH_USER'

# Public identifiers that require documentation.
__all__ = (
    'ConnectionTarget',
    'DEFAULT_BOOTSTRAP_COMMAND',
    'DEFAULT_ENV_FILE',
    'DEFAULT_PORT',
    'DEFAULT_USERNAME',
    'EXPRESSION_PATTERN',
    'PROGRAM_NAME',
    'UnlockConfiguration',
    'load_environment',
    'logger',
    'parse_expression',
    'target_from_environment',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


def parse_expression(expression, identity_file=None):
    """
    Parse a connection target expression.

    :param expression: A string of the form ``[user@]host[:port]``.
    :param identity_file: The pathname of a private key (a string or :data:`None`).
    :returns: A :class:`ConnectionTarget` object.
    :raises: :exc:`~exceptions.ValueError` when the expression can't be parsed.
    """
    match = EXPRESSION_PATTERN.match(expression or '')
    if not match:
        msg = "Failed to parse connection target expression! (%r)"
        raise ValueError(format(msg, expression))
    return ConnectionTarget(
        hostname=match.group('host'),
        identity_file=identity_file,
        port_number=int(match.group('port') or DEFAULT_PORT),
        username=match.group('user') or DEFAULT_USERNAME,
    )


def load_environment(filename=DEFAULT_ENV_FILE, environ=None):
    """
    Merge the contents of a ``.env`` file with the environment.

    :param filename: The pathname of the ``.env`` file (a string).
    :param environ: The environment to merge (a dictionary, defaults to :data:`os.environ`).
    :returns: A dictionary with environment variables. Variables that are
              already set in `environ` take precedence over the ``.env`` file.
    """
    variables = {}
    if filename and os.path.isfile(filename):
        logger.verbose("Loading environment variables from %s ..", filename)
        variables.update((k, v) for k, v in dotenv_values(filename).items() if v is not None)
    variables.update(os.environ if environ is None else environ)
    return variables


def target_from_environment(environ, identity_file=None):
    """
    Create a connection target based on environment variables.

    :param environ: A dictionary with environment variables.
    :param identity_file: Overrides ``$DROPBEAR_SSH_PRV_RSA`` (a string or :data:`None`).
    :returns: A :class:`ConnectionTarget` object or :data:`None` when
              ``$DROPBEAR_SSH_HOST`` isn't set.
    :raises: :exc:`~exceptions.ValueError` when ``$DROPBEAR_SSH_PORT`` isn't a number.
    """
    hostname = environ.get(HOST_VARIABLE)
    if not hostname:
        return None
    port = environ.get(PORT_VARIABLE) or str(DEFAULT_PORT)
    if not port.isdigit():
        msg = "Invalid port number in $%s! (%r)"
        raise ValueError(format(msg, PORT_VARIABLE, port))
    if not identity_file and environ.get(IDENTITY_VARIABLE):
        identity_file = parse_path(environ[IDENTITY_VARIABLE])
    return ConnectionTarget(
        hostname=hostname,
        identity_file=identity_file,
        port_number=int(port),
        username=environ.get(USER_VARIABLE) or DEFAULT_USERNAME,
    )


class ConnectionTarget(PropertyManager):

    """The SSH server in the pre-boot environment that is to be unlocked."""

    @key_property
    def hostname(self):
        """The host name or IP address of the remote system (a string)."""

    @key_property
    def port_number(self):
        """The port number of the SSH server (an integer)."""

    @key_property
    def username(self):
        """The username used to log in (a string)."""

    @mutable_property
    def identity_file(self):
        """The pathname of the private key used to log in (a string or :data:`None`)."""

    def __str__(self):
        """Render the connection target as a ``user@host:port`` expression."""
        return format('%s@%s:%i', self.username, self.hostname, self.port_number)


class UnlockConfiguration(PropertyManager):

    """
    Resolved configuration of the ``dropbear-unlock`` program.

    The :attr:`target` property combines the command line, the configuration
    section selected by :attr:`config_section` and the environment into a
    :class:`ConnectionTarget`. The remaining properties give the timing
    options of the unlock sequence, these can only be changed using a
    configuration section (or by setting the properties directly).
    """

    @lazy_property
    def config(self):
        """A dictionary with the options of :attr:`config_section` (an empty dictionary by default)."""
        if self.config_section:
            if self.config_section in self.config_loader.section_names:
                return self.config_loader.get_options(self.config_section)
        return {}

    @mutable_property(cached=True)
    def config_loader(self):
        """A :class:`~update_dotdee.ConfigLoader` object."""
        return ConfigLoader(program_name=PROGRAM_NAME)

    @mutable_property
    def config_section(self):
        """The configuration section to use (a string or :data:`None`)."""

    @mutable_property(cached=True)
    def bootstrap_command(self):
        """The command that starts the disk unlock helper (a string, defaults to ``cryptroot-unlock``)."""
        return self.config.get('bootstrap-command', DEFAULT_BOOTSTRAP_COMMAND)

    @mutable_property(cached=True)
    def connect_timeout(self):
        """The timeout for establishing the connection and SSH session (a number, defaults to 10 seconds)."""
        return parse_timespan(self.config.get('connect-timeout', '10s'))

    @mutable_property(cached=True)
    def echo_timeout(self):
        """How long to wait for the echo of the passphrase line (a number, defaults to 1 second)."""
        return parse_timespan(self.config.get('echo-timeout', '1s'))

    @mutable_property
    def env_file(self):
        """The pathname of the ``.env`` file (a string, defaults to :data:`DEFAULT_ENV_FILE`)."""
        return DEFAULT_ENV_FILE

    @mutable_property(cached=True)
    def environment(self):
        """The environment merged with :attr:`env_file` (a dictionary)."""
        return load_environment(self.env_file)

    @mutable_property
    def expression(self):
        """A connection target expression given on the command line (a string or :data:`None`)."""

    @mutable_property(cached=True)
    def identity_file(self):
        """
        The pathname of the private key (a string or :data:`None`).

        Defaults to the `identity-file` configuration option or the
        ``$DROPBEAR_SSH_PRV_RSA`` environment variable.
        """
        if 'identity-file' in self.config:
            return parse_path(self.config['identity-file'])
        if self.environment.get(IDENTITY_VARIABLE):
            return parse_path(self.environment[IDENTITY_VARIABLE])

    @mutable_property(cached=True)
    def known_hosts_file(self):
        """The "known hosts file" used to verify the SSH server (a string or :data:`None`)."""
        if 'known-hosts-file' in self.config:
            return parse_path(self.config['known-hosts-file'])

    @mutable_property
    def password_name(self):
        """The name of the passphrase in the ``pass`` password store (a string or :data:`None`)."""
        return self.config.get('password-name')

    @mutable_property
    def password_store(self):
        """The directory of the ``pass`` password store (a string or :data:`None`)."""
        return self.config.get('password-store')

    @mutable_property(cached=True)
    def poll_interval(self):
        """The time between non-blocking reads of the remote output (a number, defaults to 10 milliseconds)."""
        return parse_timespan(self.config.get('poll-interval', '10ms'))

    @mutable_property(cached=True)
    def retry_interval(self):
        """The time between connection attempts (a number, defaults to 1 second)."""
        return parse_timespan(self.config.get('retry-interval', '1s'))

    @mutable_property(cached=True)
    def settle_delay(self):
        """The time the remote shell gets to start before the bootstrap command is sent (defaults to 1 second)."""
        return parse_timespan(self.config.get('settle-delay', '1s'))

    @lazy_property
    def target(self):
        """
        The remote system to unlock (a :class:`ConnectionTarget` object).

        :raises: :exc:`~exceptions.ValueError` when no remote host or no
                 private key has been configured.
        """
        if self.expression or self.config_section:
            expression = self.expression or self.config.get('pre-boot', self.config_section)
            target = parse_expression(expression, identity_file=self.identity_file)
        else:
            target = target_from_environment(self.environment, identity_file=self.identity_file)
            if not target:
                raise ValueError(compact("""
                    No remote host given! Please provide a connection target
                    on the command line or set ${name}.
                """, name=HOST_VARIABLE))
        if not target.identity_file:
            raise ValueError(compact("""
                No private key configured for {target}! Use the
                --identity-file option or set ${name}.
            """, target=target, name=IDENTITY_VARIABLE))
        return target
