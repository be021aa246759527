"""
config.py
=========

Read and validate the node configuration file.

The file is rendered by the infrastructure provisioner into the instance
user data and is immutable for the lifetime of a boot. Keys use dashes,
like in the cluster configuration files::

    cluster-id: my-cluster
    bucket: kubeconfigs
    region: eu-west-1
    k3s-version: v1.28.5+k3s1
    external-port: 9443
"""
import copy
import os

import yaml

from k3sboot import K3S_DEFAULT_PORT, K3S_INSTALL_URL, K3S_KUBECONFIG
from k3sboot.util.net import is_port
from k3sboot.util.util import name_validation

DEFAULT_CONFIG_PATH = "/etc/k3sboot/config.yml"
CONFIG_ENV = "K3SBOOT_CONFIG"

VARIANTS = ("current", "legacy")

DEFAULTS = {
    'cluster-id': None,
    'bucket': None,
    'region': None,
    'variant': 'current',
    'aws-access-key-id': None,
    'aws-secret-access-key': None,
    'k3s-version': None,
    'k3s-channel': 'stable',
    'k3s-exec': '',
    'k3s-install-url': K3S_INSTALL_URL,
    'external-port': K3S_DEFAULT_PORT,
    'disable': ['traefik', 'servicelb'],
    'network-interface': None,
    'ssh-ca-key': None,
    'sshd-config': '/etc/ssh/sshd_config',
    'ssh-ca-path': '/etc/ssh/trusted-user-ca-keys.pem',
    'ssh-service': 'ssh',
    'maintenance-script-url': None,
    'maintenance-interval': 15,
    'log-file': '/var/log/k3sboot.log',
    'kubeconfig': K3S_KUBECONFIG,
    'install-retry-interval': 5,
    'install-max-attempts': None,
    'install-timeout': 600,
    'health-interval': 10,
    'health-attempts': 30,
    'health-components': ['coredns', 'local-path-provisioner',
                          'metrics-server'],
    'health-min-running': 2,
    'max-reboots': 3,
    'state-file': '/var/lib/k3sboot/state.yml',
    'network-check-url': K3S_INSTALL_URL,
    'network-check-attempts': 60,
    'network-check-interval': 5,
    'publish-retries': 3,
    'publish-retry-delay': 5,
    'metadata-url': 'http://169.254.169.254',
    'metadata-token-ttl': 21600,
}

POSITIVE_NUMBERS = ('maintenance-interval', 'install-retry-interval',
                    'install-timeout',
                    'health-interval', 'health-attempts',
                    'network-check-attempts', 'network-check-interval',
                    'publish-retries', 'metadata-token-ttl')


class ConfigError(ValueError):
    """The configuration file is missing values or holds invalid ones"""


class BootConfig:  # pylint: disable=too-many-instance-attributes
    """The validated node configuration

    Every key of the configuration file is available as an attribute with
    dashes replaced by underscores, e.g. ``config.cluster_id``.

    Args:
        values (dict): the parsed configuration file
        path (str): where the values were read from, used by the
            credential publisher unit
    """

    def __init__(self, values, path=None):
        if values is None:
            values = {}
        if not isinstance(values, dict):
            raise ConfigError("the configuration must be a mapping")

        unknown = set(values) - set(DEFAULTS)
        if unknown:
            raise ConfigError("unknown configuration keys: %s" %
                              ", ".join(sorted(unknown)))

        self._values = copy.deepcopy(DEFAULTS)
        self._values.update(values)
        self.path = path
        self.validate()

    def __getattr__(self, name):
        try:
            return self.__dict__['_values'][name.replace('_', '-')]
        except KeyError:
            raise AttributeError(name) from None

    def as_dict(self):
        """Return a copy of all the values, including defaults"""
        return copy.deepcopy(self._values)

    def validate(self):
        """Check the values

        Raises:
            ConfigError describing the first invalid value
        """
        vals = self._values
        for key in ('cluster-id', 'bucket', 'region'):
            if not vals[key]:
                raise ConfigError(f"'{key}' must be set")

        try:
            name_validation(vals['cluster-id'])
        except ValueError as err:
            raise ConfigError(str(err)) from err

        if not is_port(vals['external-port']):
            raise ConfigError(
                f"'external-port' {vals['external-port']!r} is not a valid port")

        if vals['variant'] not in VARIANTS:
            raise ConfigError("'variant' must be one of: %s" %
                              ", ".join(VARIANTS))

        if vals['variant'] == 'legacy' and not (
                vals['aws-access-key-id'] and vals['aws-secret-access-key']):
            raise ConfigError("the legacy variant needs 'aws-access-key-id' "
                              "and 'aws-secret-access-key'")

        for key in POSITIVE_NUMBERS:
            if not isinstance(vals[key], (int, float)) or vals[key] <= 0:
                raise ConfigError(f"'{key}' must be a positive number")

        attempts = vals['install-max-attempts']
        if attempts is not None and (not isinstance(attempts, int) or
                                     attempts <= 0):
            raise ConfigError("'install-max-attempts' must be a positive "
                              "integer or null")

        if not isinstance(vals['max-reboots'], int) or vals['max-reboots'] < 0:
            raise ConfigError("'max-reboots' must be zero or a positive "
                              "integer")

        if not isinstance(vals['disable'], list):
            raise ConfigError("'disable' must be a list")

        components = vals['health-components']
        if not isinstance(components, list) or not components:
            raise ConfigError("'health-components' must be a non empty list")

        minimum = vals['health-min-running']
        if not isinstance(minimum, int) or not 0 < minimum <= len(components):
            raise ConfigError("'health-min-running' must be between 1 and "
                              "the number of health-components")


def config_path(path=None):
    """Return the configuration path to use

    An explicit path wins over the environment, which wins over the
    default location.
    """
    return path or os.getenv(CONFIG_ENV) or DEFAULT_CONFIG_PATH


def load_config(path=None):
    """Read and validate the configuration file

    Args:
        path (str): the file to read, see :func:`config_path`

    Returns:
        A :class:`BootConfig`

    Raises:
        ConfigError if the file can't be read or holds invalid values
    """
    path = config_path(path)
    try:
        with open(path, 'r') as stream:
            values = yaml.safe_load(stream)
    except OSError as err:
        raise ConfigError(f"can't read configuration {path}: {err}") from err
    except yaml.YAMLError as err:
        raise ConfigError(f"can't parse configuration {path}: {err}") from err

    return BootConfig(values, path=path)
