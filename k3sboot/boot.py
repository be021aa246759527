"""
boot.py
=======

Drive the bootstrap of a node from a fresh instance to a running, published
k3s server.

The phases run strictly one after another::

    preparing -> installing -> waiting -> publishing -> ready

The current phase and the number of reboots are stored in a small YAML
file, so a node which reboots itself because k3s did not come up knows how
often it tried already. When ``max-reboots`` is reached the node stays up in
the ``failed`` phase instead of rebooting forever.
"""
import datetime
import os
import time
from pathlib import Path
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import yaml

from k3sboot.cloud.metadata import MetadataError, resolve
from k3sboot.deploy.health import HealthGate
from k3sboot.deploy.kubeconfig import register_publisher_unit
from k3sboot.provision.os_prep import OSPreparation, PrepareError
from k3sboot.provision.runtime import (InstallError, RuntimeInstaller,
                                       runtime_config)
from k3sboot.util.logger import Logger, add_file_handler
from k3sboot.util.util import (CommandError, PollCancelled, PollTimeout,
                               poll_until, run_cmd)

LOGGER = Logger(__name__)

PREPARING = "preparing"
INSTALLING = "installing"
WAITING = "waiting"
PUBLISHING = "publishing"
READY = "ready"
REBOOTING = "rebooting"
FAILED = "failed"

# cloud-init only runs the user data once per instance unless this
# semaphore is removed
CLOUD_INIT_SEMAPHORES = "var/lib/cloud/instances/*/sem/config_scripts_user"


class BootError(RuntimeError):
    """The bootstrap stopped, the node is not part of a cluster"""


class BootState:
    """The progress of the bootstrap, persisted across reboots

    Args:
        phase (str): the phase the bootstrap is in
        reboots (int): reboots issued since the node was last ready
        last_error (str): the error which ended the previous attempt
    """

    def __init__(self, phase=PREPARING, reboots=0, last_error=None,
                 updated=None):
        self.phase = phase
        self.reboots = reboots
        self.last_error = last_error
        self.updated = updated

    def as_dict(self):
        """The state as a plain dictionary"""
        return {'phase': self.phase,
                'reboots': self.reboots,
                'last-error': self.last_error,
                'updated': self.updated}

    @classmethod
    def load(cls, path):
        """Read the state stored at ``path``

        A missing or unreadable file gives a fresh state.
        """
        try:
            with open(path) as fh:
                data = yaml.safe_load(fh) or {}
            if not isinstance(data, dict):
                raise ValueError("state is not a mapping")
            reboots = int(data.get('reboots', 0) or 0)
        except FileNotFoundError:
            return cls()
        except (OSError, yaml.YAMLError, TypeError, ValueError) as err:
            LOGGER.warning("Ignoring unreadable state file %s: %s", path, err)
            return cls()

        return cls(phase=data.get('phase', PREPARING),
                   reboots=reboots,
                   last_error=data.get('last-error'),
                   updated=data.get('updated'))

    def save(self, path):
        """Write the state to ``path``, replacing the old file atomically"""
        self.updated = datetime.datetime.now(datetime.timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ")
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w") as fh:
            yaml.safe_dump(self.as_dict(), fh, default_flow_style=False)
        os.replace(tmp, path)


def network_is_up(url, opener=urlopen):
    """Check if ``url`` can be reached

    Any HTTP answer, even an error status, means the network works.
    """
    try:
        with opener(Request(url, method="HEAD"), timeout=5):
            return True
    except HTTPError:
        return True
    except (URLError, OSError) as err:
        LOGGER.debug("Network not up yet: %s", err)
        return False


class BootSupervisor:  # pylint: disable=too-many-instance-attributes
    """Run the bootstrap phases and recover from a stuck k3s by rebooting

    Args:
        config (:class:`k3sboot.config.BootConfig`): the node configuration
        root (str): prefix for all files touched on the host
        runner (callable): runs external commands
        sleep (callable): waits in all polling loops
        resolver (callable): returns the
            :class:`k3sboot.cloud.metadata.NodeIdentity` of this node
        opener (callable): used for the network check
        os_prep (:class:`k3sboot.provision.os_prep.OSPreparation`)
        installer (:class:`k3sboot.provision.runtime.RuntimeInstaller`)
        health_gate (:class:`k3sboot.deploy.health.HealthGate`)
        cancel (threading.Event): stops the unbounded waits
    """

    def __init__(self, config, root="/", runner=run_cmd, sleep=time.sleep,
                 resolver=None, opener=urlopen, os_prep=None, installer=None,
                 health_gate=None, cancel=None):
        self.config = config
        self.root = Path(root)
        self.runner = runner
        self.sleep = sleep
        self.resolver = resolver or (lambda: resolve(config))
        self.opener = opener
        self.os_prep = os_prep or OSPreparation(config, root=root,
                                                runner=runner)
        self.installer = installer or RuntimeInstaller(
            config, root=root, runner=runner, sleep=sleep, cancel=cancel)
        self.health_gate = health_gate or HealthGate(config, sleep=sleep)
        self.cancel = cancel
        self.state = None

    def _enter(self, phase):
        self.state.phase = phase
        self.state.save(self.config.state_file)

    def wait_for_network(self):
        """Block until the network works, for a bounded number of attempts

        Raises:
            PollTimeout if the network did not come up
        """
        LOGGER.banner("Waiting for network")
        poll_until(lambda: network_is_up(self.config.network_check_url,
                                         self.opener),
                   self.config.network_check_interval,
                   max_attempts=self.config.network_check_attempts,
                   cancel=self.cancel, sleep=self.sleep,
                   description="network")
        LOGGER.success("Network is up")

    def clear_cloud_init_guard(self):
        """Let cloud-init run the bootstrap again on the next boot

        Returns:
            The number of semaphores removed
        """
        removed = 0
        for sem in self.root.glob(CLOUD_INIT_SEMAPHORES):
            LOGGER.debug("Removing %s", sem)
            sem.unlink()
            removed += 1
        return removed

    def recover(self, err):
        """Reboot the node after a systemic failure

        Raises:
            BootError when the reboot ceiling is reached
        """
        self.state.last_error = str(err)
        if self.state.reboots >= self.config.max_reboots:
            self._enter(FAILED)
            raise BootError(
                f"giving up after {self.state.reboots} reboot(s): {err}")

        self.state.reboots += 1
        self._enter(REBOOTING)
        LOGGER.banner("Rebooting (%d/%d)" % (self.state.reboots,
                                             self.config.max_reboots))
        LOGGER.error("%s", err)
        self.clear_cloud_init_guard()
        self.runner(["reboot"])
        return self.state

    def fail(self, err):
        """Record a fatal error and stop"""
        self.state.last_error = str(err)
        failed_in = self.state.phase
        self._enter(FAILED)
        raise BootError(f"bootstrap failed while {failed_in}: {err}") from err

    def run(self):
        """Run the whole bootstrap

        Returns:
            The final :class:`BootState`, in phase ``ready`` or
            ``rebooting``

        Raises:
            BootError if the bootstrap failed
        """
        log_file = Path(self.config.log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        add_file_handler(str(log_file))

        self.state = BootState.load(self.config.state_file)
        if self.state.reboots:
            LOGGER.warning("Bootstrap attempt after %d reboot(s), last "
                           "error: %s", self.state.reboots,
                           self.state.last_error)

        try:
            self._enter(PREPARING)
            # the preparation already downloads the AWS CLI
            self.wait_for_network()
            self.os_prep.prepare()

            self._enter(INSTALLING)
            LOGGER.banner("Resolving instance identity")
            identity = self.resolver()
            LOGGER.info("Instance %s in %s, private IP %s, public %s",
                        identity.instance_id, identity.availability_zone,
                        identity.local_ip, identity.public_hostname or
                        identity.public_ip or "-")

            self.installer.install(runtime_config(self.config, identity),
                                   identity)

            self._enter(WAITING)
            self.health_gate.wait_healthy()

            self._enter(PUBLISHING)
            register_publisher_unit(self.config, root=self.root,
                                    runner=self.runner)
        except PollTimeout as err:
            # k3s (or the network) did not come up, a reboot starts over
            return self.recover(err)
        except (PrepareError, MetadataError, InstallError, CommandError,
                PollCancelled, OSError) as err:
            return self.fail(err)

        self.state.reboots = 0
        self.state.last_error = None
        self._enter(READY)
        LOGGER.success("Node %s is ready", identity.instance_id)
        return self.state
