# Unlock remote root disk encryption over Dropbear SSH.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""
Usage: dropbear-unlock [OPTIONS] [TARGET]

Unlock the root disk encryption of a remote Linux system that's waiting in its
pre-boot environment (the initial ram disk) for the passphrase to be entered.
The program connects to the Dropbear SSH server in the pre-boot environment,
runs 'cryptroot-unlock' and answers its prompts with the passphrase. Until the
remote system is reachable, connection attempts are retried indefinitely.

The TARGET argument defines how to connect to the pre-boot environment:

- Its value is assumed to be a host name or IP address.
- It can optionally start with a username followed by an '@' sign.
- It can optionally end with a ':' followed by a port number.

The default username is 'root' and the default port number 22. If TARGET
matches the name of a user defined configuration section the options in that
section define how dropbear-unlock operates. When TARGET isn't given the
environment variables $DROPBEAR_SSH_HOST, $DROPBEAR_SSH_PORT and
$DROPBEAR_SSH_PRV_RSA are used (these can also be set in a .env file).

Press Control-C to abort the unlock sequence.

Supported options:

  -i, --identity-file=KEY_FILE

    Use the private key stored in KEY_FILE for the SSH connection to the
    pre-boot environment.

  -k, --known-hosts=HOSTS_FILE

    Use HOSTS_FILE as the "known hosts file" to verify the SSH server in the
    pre-boot environment. When this option is not given host key verification
    is disabled, because the SSH servers in the pre-boot and post-boot
    environments have different host keys.

  -p, --password=NAME

    Get the passphrase for the root disk encryption of the remote system from
    the local password store in ~/.password-store using the 'pass' program.
    The NAME argument gives the full name of the password.

  -e, --env-file=FILE

    Load environment variables from FILE instead of '.env'.

  -v, --verbose

    Increase logging verbosity (can be repeated).

  -q, --quiet

    Decrease logging verbosity (can be repeated).

  -h, --help

    Show this message and exit.
"""

# Standard library modules.
import getopt
import getpass
import signal
import sys
import threading

# External dependencies.
import coloredlogs
from executor import ExternalCommandFailed, execute
from humanfriendly import Spinner, Timer, format, parse_path
from humanfriendly.terminal import connected_to_terminal, usage, warning
from verboselogs import VerboseLogger

# Modules included in our package.
from dropbear_unlock import RemoteUnlockError
from dropbear_unlock.config import UnlockConfiguration
from dropbear_unlock.orchestrator import UnlockOrchestrator
from dropbear_unlock.protocol import CANCELLED, REJECTED, Passphrase
from dropbear_unlock.reporting import EventLog

CANCEL_SIGNALS = (signal.SIGINT, signal.SIGTERM)
"""The signals that abort the unlock sequence (a tuple of integers)."""

# Public identifiers that require documentation.
__all__ = (
    'CANCEL_SIGNALS',
    'PassphraseRejectedError',
    'PassphraseUnavailableError',
    'UnlockAbortedError',
    'get_passphrase_from_store',
    'logger',
    'main',
    'prompt_for_passphrase',
    'unlock_remote_system',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


def main():
    """Command line interface for ``dropbear-unlock``."""
    # Initialize logging to the terminal and system log.
    coloredlogs.install(syslog=True)
    # Parse the command line arguments.
    config_opts = {}
    passphrase = None
    try:
        options, arguments = getopt.gnu_getopt(sys.argv[1:], 'i:k:p:e:vqh', [
            'identity-file=', 'known-hosts=', 'password=', 'env-file=',
            'verbose', 'quiet', 'help',
        ])
        for option, value in options:
            if option in ('-i', '--identity-file'):
                config_opts['identity_file'] = parse_path(value)
            elif option in ('-k', '--known-hosts'):
                config_opts['known_hosts_file'] = parse_path(value)
            elif option in ('-p', '--password'):
                passphrase = get_passphrase_from_store(value)
            elif option in ('-e', '--env-file'):
                config_opts['env_file'] = parse_path(value)
            elif option in ('-v', '--verbose'):
                coloredlogs.increase_verbosity()
            elif option in ('-q', '--quiet'):
                coloredlogs.decrease_verbosity()
            elif option in ('-h', '--help'):
                usage(__doc__)
                sys.exit(0)
            else:
                raise Exception("Unhandled option!")
        if len(arguments) > 1:
            raise Exception("only one positional argument allowed")
        configuration = UnlockConfiguration(**config_opts)
        # Check if the positional argument matches the name
        # of a user defined configuration section.
        if arguments and arguments[0] in configuration.config_loader.section_names:
            logger.info("Loading configuration section '%s' ..", arguments[0])
            configuration.config_section = arguments[0]
        elif arguments:
            configuration.expression = arguments[0]
        target = configuration.target
        if passphrase is None and configuration.password_name:
            passphrase = get_passphrase_from_store(configuration.password_name, configuration.password_store)
        # Prompt the operator to enter the disk encryption passphrase?
        if passphrase is None:
            passphrase = prompt_for_passphrase(target)
    except Exception as e:
        warning("Failed to parse command line arguments! (%s)", e)
        sys.exit(1)
    # Try to unlock the remote system.
    try:
        unlock_remote_system(configuration, passphrase)
    except RemoteUnlockError as e:
        logger.error("Aborting due to error: %s", e)
        sys.exit(2)
    except Exception:
        logger.exception("Aborting due to unexpected exception!")
        sys.exit(3)


def unlock_remote_system(configuration, passphrase, interactive=None, reporter=None):
    """
    Unlock a remote system, asking for a new passphrase when it's refused.

    :param configuration: An :class:`~dropbear_unlock.config.UnlockConfiguration` object.
    :param passphrase: A :class:`~dropbear_unlock.protocol.Passphrase` object.
    :param interactive: :data:`True` to prompt for a new passphrase when the
                        remote system refuses the passphrase, :data:`False`
                        to give up instead (defaults to the return value of
                        :func:`~humanfriendly.terminal.connected_to_terminal()`
                        when given :data:`sys.stdin`).
    :param reporter: An :class:`~dropbear_unlock.reporting.EventLog` object.
    :returns: The final :class:`~dropbear_unlock.protocol.AttemptOutcome`.
    :raises: :exc:`UnlockAbortedError` when the operator aborts,
             :exc:`PassphraseRejectedError` when the passphrase is refused
             and `interactive` is :data:`False`.
    """
    if interactive is None:
        interactive = connected_to_terminal(sys.stdin)
    reporter = reporter or EventLog()
    cancel_event = threading.Event()
    orchestrator = UnlockOrchestrator(
        bootstrap_command=configuration.bootstrap_command,
        cancel_event=cancel_event,
        connect_timeout=configuration.connect_timeout,
        echo_timeout=configuration.echo_timeout,
        known_hosts_file=configuration.known_hosts_file,
        passphrase=passphrase,
        poll_interval=configuration.poll_interval,
        reporter=reporter,
        retry_interval=configuration.retry_interval,
        settle_delay=configuration.settle_delay,
        target=configuration.target,
    )
    while True:
        reporter.report("Try unlocking %s ..", configuration.target)
        previous_handlers = install_cancel_handlers(cancel_event)
        try:
            with Spinner(label="Unlocking %s" % configuration.target.hostname, timer=Timer()) as spinner:
                reporter.spinner = spinner
                outcome = orchestrator.unlock()
        finally:
            reporter.spinner = None
            restore_signal_handlers(previous_handlers)
        if outcome.kind == CANCELLED:
            raise UnlockAbortedError("Unlock sequence aborted by operator.")
        if outcome.kind != REJECTED:
            return outcome
        passphrase.clear()
        if not interactive:
            raise PassphraseRejectedError("The remote system refused the passphrase!")
        passphrase.value = prompt_for_passphrase(configuration.target).value


def install_cancel_handlers(cancel_event):
    """
    Make :data:`CANCEL_SIGNALS` set the given event.

    :param cancel_event: A :class:`threading.Event` object.
    :returns: A dictionary with the previous signal handlers.
    """
    def handler(signum, frame):
        logger.notice("Received signal %i, aborting unlock sequence ..", signum)
        cancel_event.set()
    return dict((signum, signal.signal(signum, handler)) for signum in CANCEL_SIGNALS)


def restore_signal_handlers(handlers):
    """Restore the signal handlers returned by :func:`install_cancel_handlers()`."""
    for signum, handler in handlers.items():
        signal.signal(signum, handler)


def get_passphrase_from_store(name, store=None):
    """
    Get the disk encryption passphrase from the ``pass`` password store.

    :param name: The full name of the password (a string).
    :param store: The directory of the password store (a string, defaults
                  to the ``pass`` program's own default).
    :returns: A :class:`~dropbear_unlock.protocol.Passphrase` object
              holding the first line of the password.
    :raises: :exc:`PassphraseUnavailableError` when the ``pass`` program
             fails or the password is empty.
    """
    logger.verbose("Getting disk encryption passphrase '%s' from password store ..", name)
    options = dict(capture=True, shell=False, tty=True)
    try:
        options['environment'] = dict(GPG_TTY=execute('tty', **options))
        if store:
            options['environment']['PASSWORD_STORE_DIR'] = parse_path(store)
        output = execute('pass', 'show', name, **options)
    except ExternalCommandFailed as e:
        msg = "Failed to get passphrase '%s' using 'pass' program! (%s)"
        raise PassphraseUnavailableError(format(msg, name, e.error_message))
    lines = output.splitlines()
    if not (lines and lines[0].strip()):
        msg = "The password '%s' in the password store is empty!"
        raise PassphraseUnavailableError(format(msg, name))
    return Passphrase(value=lines[0])


def prompt_for_passphrase(target):
    """
    Prompt the operator to interactively enter the disk encryption passphrase.

    :param target: The :class:`~dropbear_unlock.config.ConnectionTarget` to unlock.
    :returns: A :class:`~dropbear_unlock.protocol.Passphrase` object.

    Empty input is refused and the prompt is repeated.
    """
    prompt_text = format("Enter disk encryption passphrase for %s: ", target)
    while True:
        passphrase = Passphrase(value=getpass.getpass(prompt_text))
        if passphrase.value.strip():
            return passphrase
        warning("No passphrase entered, please try again (or press Control-C to abort).")


class UnlockAbortedError(RemoteUnlockError):

    """Raised when the operator aborts the unlock sequence."""


class PassphraseRejectedError(RemoteUnlockError):

    """Raised when the remote system refuses the passphrase and no new passphrase can be obtained."""


class PassphraseUnavailableError(RemoteUnlockError):

    """Raised when the passphrase can't be obtained from the password store."""
