"""
k3sboot
=======

The main entry point for the node bootstrap.
Don't use it directly, instead install the package with setup.py.
It automatically creates an executable in your path.

On a node the instance user data calls ``k3sboot boot``. The other commands
run single steps, which is handy when debugging a node by hand.
"""
import argparse
import sys

import yaml

from mach import mach1

from . import __version__
from .boot import BootError, BootSupervisor
from .cloud.metadata import MetadataError, resolve
from .config import ConfigError, load_config
from .deploy.health import HealthGate, HealthTimeout
from .deploy.kubeconfig import CredentialPublisher, PublishError
from .provision.os_prep import OSPreparation, PrepareError
from .provision.runtime import InstallError, RuntimeInstaller, runtime_config
from .util.logger import Logger

LOGGER = Logger(__name__)


def get_config(path):
    """Load the configuration or exit"""
    try:
        return load_config(path)
    except ConfigError as err:
        LOGGER.error(f"Error: {err}")
        sys.exit(1)


@mach1()
class K3sBoot:  # pylint: disable=no-self-use
    """
    The main entry point for the program. This class does the CLI parsing
    and descides which action shoud be taken
    """
    def __init__(self):
        self.parser.add_argument(  # pylint: disable=no-member
            "--version", action="store_true",
            help="show version and exit",
            default=argparse.SUPPRESS)

        verbosity_help = "".join([
            "set the verbosity level (",
            "0 = quiet, ",
            "1 = error, ",
            "2 = warning, ",
            "3 = info, ",
            "4 = debug)"])
        self.parser.add_argument("--verbosity",  # pylint: disable=no-member
                                 "-v",
                                 help=verbosity_help,
                                 choices=['0', '1', '2', '3', '4', 'quiet',
                                          'error', 'warning', 'info', 'debug'],
                                 type=str,
                                 default=3)

    def _get_version(self):
        print("%s version: %s" % (self.__class__.__name__, __version__))

    def _get_verbosity(self):
        pass

    def boot(self, config: str = None):
        """
        Bootstrap this node into a k3s server

        config - configuration file
        """
        config = get_config(config)
        try:
            BootSupervisor(config).run()
        except BootError as err:
            LOGGER.error(f"Error: {err}")
            sys.exit(1)

    def prepare(self, config: str = None):
        """
        Harden and prepare the operating system

        config - configuration file
        """
        config = get_config(config)
        try:
            OSPreparation(config).prepare()
        except PrepareError as err:
            LOGGER.error(f"Error: {err}")
            sys.exit(1)

    def install(self, config: str = None):
        """
        Install k3s with flags derived from the instance identity

        config - configuration file
        """
        config = get_config(config)
        try:
            identity = resolve(config)
            RuntimeInstaller(config).install(runtime_config(config, identity),
                                             identity)
        except (MetadataError, InstallError) as err:
            LOGGER.error(f"Error: {err}")
            sys.exit(1)

    def wait(self, config: str = None):
        """
        Wait until the k3s system pods are running

        config - configuration file
        """
        config = get_config(config)
        try:
            HealthGate(config).wait_healthy()
        except HealthTimeout as err:
            LOGGER.error(f"Error: {err}")
            sys.exit(1)

    def publish(self, config: str = None):
        """
        Publish the kubeconfig of this node to the bucket

        config - configuration file
        """
        config = get_config(config)
        try:
            CredentialPublisher(config).publish()
        except PublishError as err:
            LOGGER.error(f"Error: {err}")
            sys.exit(1)

    def identity(self, config: str = None):
        """
        Show the identity of this instance

        config - configuration file
        """
        config = get_config(config)
        try:
            node = resolve(config)
        except MetadataError as err:
            LOGGER.error(f"Error: {err}")
            sys.exit(1)

        print(yaml.safe_dump(dict(node._asdict()), default_flow_style=False))


def main():
    """
    run and execute k3sboot
    """
    k = K3sBoot()

    # pylint: disable=no-member
    k.parser.description = 'Bootstrap an EC2 instance into a k3s server '\
                            'and publish its kubeconfig. All commands read '\
                            '/etc/k3sboot/config.yml unless --config or '\
                            'K3SBOOT_CONFIG say otherwise.'

    # Setting verbosity level
    level = k.parser.parse_args().verbosity
    level_to_int = {
        'quiet': 0,
        'error': 1,
        'warning': 2,
        'info': 3,
        'debug': 4}
    try:
        LOGGER.level = int(level)
    except ValueError:
        LOGGER.level = level_to_int[level]

    # pylint misses the fact that K3sBoot is decorated with mach.
    # the mach decorator analyzes the methods in the class and dynamically
    # creates the CLI parser. It also adds the method run to the class.
    k.run()  # pylint: disable=no-member
