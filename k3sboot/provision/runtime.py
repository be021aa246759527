"""
runtime.py
==========

Install and configure the k3s cluster runtime on this node.

The runtime flags are derived from the identity of the instance, so they
are computed again on every boot::

    >>> provider_id(identity)
    'eu-west-1a/i-0123456789abcdef0'

The install script of k3s is idempotent. It is retried with a fixed
interval until it succeeds, without an upper limit unless
``install-max-attempts`` is configured.
"""
import os
import re
import tempfile
import time
from collections import namedtuple
from pathlib import Path
from subprocess import TimeoutExpired

from k3sboot.util.logger import Logger
from k3sboot.util.util import (CommandError, PollTimeout, poll_until,
                               run_cmd)

LOGGER = Logger(__name__)

IPTABLES_ALTERNATIVES = (("iptables", "/usr/sbin/iptables-legacy"),
                         ("ip6tables", "/usr/sbin/ip6tables-legacy"))


class InstallError(RuntimeError):
    """The cluster runtime could not be installed"""


RuntimeConfig = namedtuple("RuntimeConfig", ["version", "channel",
                                             "exec_flags", "cluster_id"])


def provider_id(identity):
    """The cloud provider id of the node: ``{availability_zone}/{instance_id}``"""
    return f"{identity.availability_zone}/{identity.instance_id}"


def build_exec_flags(config, identity):
    """Compute the k3s server flags for this node

    Args:
        config (:class:`k3sboot.config.BootConfig`): the node configuration
        identity (:class:`k3sboot.cloud.metadata.NodeIdentity`): this node

    Returns:
        A list of flags, starting with the ``server`` sub command
    """
    flags = ["server", f"--https-listen-port {config.external_port}"]
    flags += [f"--disable {component}" for component in config.disable]

    for san in (identity.public_ip, identity.public_hostname):
        if san:
            flags.append(f"--tls-san {san}")

    flags += [f"--node-ip {identity.local_ip}",
              f"--advertise-address {identity.local_ip}",
              f"--flannel-iface {identity.network_interface}",
              f"--kubelet-arg=provider-id=aws:///{provider_id(identity)}"]

    if config.k3s_exec:
        flags.append(config.k3s_exec.strip())

    return flags


def runtime_config(config, identity):
    """Build the :class:`RuntimeConfig` used for this boot"""
    return RuntimeConfig(version=config.k3s_version,
                         channel=config.k3s_channel,
                         exec_flags=" ".join(build_exec_flags(config,
                                                              identity)),
                         cluster_id=config.cluster_id)


def install_env(rconfig):
    """The environment the k3s install script is called with"""
    env = {"INSTALL_K3S_CHANNEL": rconfig.channel,
           "INSTALL_K3S_EXEC": rconfig.exec_flags}
    if rconfig.version:
        env["INSTALL_K3S_VERSION"] = rconfig.version
    return env


def replace_hostname(text, old, new):
    """Replace every occurrence of the host name ``old`` in ``text``

    Only whole names are replaced, ``ip-10-0-0-1`` does not match inside
    ``ip-10-0-0-10``, but it does inside ``ip-10-0-0-1.ec2.internal``.
    """
    pattern = re.compile(r"(?<![\w-])%s(?![\w-])" % re.escape(old))
    return pattern.sub(new, text)


def set_hostname(new_hostname, root="/", runner=run_cmd):
    """Set the host name of the node to ``new_hostname``

    ``/etc/hosts`` and ``/etc/hostname`` are only rewritten when they
    still reference the old name.

    Args:
        new_hostname (str): the new name, the instance id
        root (str): prefix for the files touched
        runner (callable): runs external commands

    Returns:
        True if the host name changed
    """
    root = Path(root)
    hostname_file = root / "etc/hostname"
    hosts_file = root / "etc/hosts"

    current = ""
    if hostname_file.exists():
        current = hostname_file.read_text().strip()

    if current == new_hostname:
        LOGGER.info("Host name is already %s", new_hostname)
        return False

    LOGGER.info("Changing host name from '%s' to '%s'", current, new_hostname)
    if current and hosts_file.exists():
        hosts = hosts_file.read_text()
        updated = replace_hostname(hosts, current, new_hostname)
        if updated != hosts:
            hosts_file.write_text(updated)

    hostname_file.parent.mkdir(parents=True, exist_ok=True)
    hostname_file.write_text(new_hostname + "\n")
    runner(["hostname", new_hostname])
    return True


def use_legacy_iptables(runner=run_cmd):
    """Switch iptables to the legacy backend flannel works with"""
    for name, path in IPTABLES_ALTERNATIVES:
        runner(["update-alternatives", "--set", name, path])


class RuntimeInstaller:
    """Install k3s on this node

    Args:
        config (:class:`k3sboot.config.BootConfig`): the node configuration
        root (str): prefix for the files touched
        runner (callable): runs external commands
        sleep (callable): waits between two install attempts
        cancel (threading.Event): stops the install retries once set
    """

    def __init__(self, config, root="/", runner=run_cmd, sleep=time.sleep,
                 cancel=None):
        self.config = config
        self.root = root
        self.runner = runner
        self.sleep = sleep
        self.cancel = cancel
        self.attempts = 0

    def attempt(self, rconfig):
        """Download and run the install script once

        Returns:
            True if the install script succeeded
        """
        self.attempts += 1
        LOGGER.info("Installing k3s (attempt %d) ...", self.attempts)
        with tempfile.TemporaryDirectory() as tmp:
            script = os.path.join(tmp, "install.sh")
            try:
                self.runner(["curl", "-sfL", self.config.k3s_install_url,
                             "-o", script])
                self.runner(["sh", script], env=install_env(rconfig),
                            timeout=self.config.install_timeout)
            except (CommandError, OSError, TimeoutExpired) as err:
                LOGGER.warning("k3s install failed: %s", err)
                return False
        return True

    def install(self, rconfig, identity):
        """Configure the host and install k3s until the installer succeeds

        Args:
            rconfig (:class:`RuntimeConfig`): the runtime parameters
            identity (:class:`k3sboot.cloud.metadata.NodeIdentity`): this node

        Raises:
            InstallError if the host could not be configured or the
            configured number of install attempts was exhausted
        """
        LOGGER.banner("Setting host name")
        try:
            set_hostname(identity.instance_id, self.root, self.runner)
        except (CommandError, OSError) as err:
            raise InstallError(f"can't set host name: {err}") from err

        LOGGER.banner("Selecting legacy iptables")
        try:
            use_legacy_iptables(self.runner)
        except (CommandError, OSError) as err:
            raise InstallError(f"can't select legacy iptables: {err}") from err

        LOGGER.banner("Installing k3s %s" % (rconfig.version or
                                             rconfig.channel))
        LOGGER.debug("INSTALL_K3S_EXEC=%s", rconfig.exec_flags)
        try:
            poll_until(lambda: self.attempt(rconfig),
                       self.config.install_retry_interval,
                       max_attempts=self.config.install_max_attempts,
                       cancel=self.cancel, sleep=self.sleep,
                       description="k3s installation")
        except PollTimeout as err:
            raise InstallError(str(err)) from err

        LOGGER.success("k3s installed after %d attempt(s)", self.attempts)
