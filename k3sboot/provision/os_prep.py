"""
os_prep.py
==========

Harden and prepare the operating system before the cluster runtime is
installed. Every step can run again on each boot without side effects:
files are only written when their content differs, and configuration
lines are only added when they are missing.
"""
import os
import platform
import shutil
import tempfile
from pathlib import Path

from k3sboot.ssl import load_ssh_ca_keys, ssh_fingerprint
from k3sboot.util.logger import Logger
from k3sboot.util.util import CommandError, run_cmd, write_if_changed

LOGGER = Logger(__name__)

CRON_FILE = "/etc/cron.d/k3sboot-maintenance"
AWS_CLI_URL = "https://awscli.amazonaws.com/awscli-exe-linux-{arch}.zip"

# uname -m to the architecture names of the AWS CLI bundles
ARCHITECTURES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}


class PrepareError(RuntimeError):
    """A preparation step failed, the node must not join the cluster"""


def cli_architecture(machine):
    """Map the machine hardware name to an AWS CLI bundle architecture

    Raises:
        PrepareError for unsupported architectures
    """
    try:
        return ARCHITECTURES[machine.lower()]
    except KeyError:
        raise PrepareError(f"unsupported architecture '{machine}'") from None


def cron_line(url, interval):
    """Format the crontab line running the maintenance script"""
    return f"*/{interval} * * * * root curl -sfL {url} | sh\n"


class OSPreparation:
    """Prepare the operating system of the node

    Args:
        config (:class:`k3sboot.config.BootConfig`): the node configuration
        root (str): prefix for all files touched, ``/`` on a real node
        runner (callable): runs external commands, see
            :func:`k3sboot.util.util.run_cmd`
        which (callable): finds executables, see ``shutil.which``
        machine (callable): returns the hardware name, see
            ``platform.machine``
    """

    def __init__(self, config, root="/", runner=run_cmd, which=shutil.which,
                 machine=platform.machine):
        self.config = config
        self.root = Path(root)
        self.runner = runner
        self.which = which
        self.machine = machine

    def path(self, path):
        """Return ``path`` below the root prefix"""
        return self.root / str(path).lstrip("/")

    def trust_ssh_ca(self):
        """Let the SSH daemon accept user certificates signed by our CA

        Returns:
            True if the daemon configuration or the CA file changed.
        """
        if not self.config.ssh_ca_key:
            LOGGER.info("No SSH CA key configured, skipping")
            return False

        try:
            keys = load_ssh_ca_keys(self.config.ssh_ca_key)
        except ValueError as err:
            raise PrepareError(f"invalid SSH CA key: {err}") from err

        for key in keys:
            LOGGER.debug("Trusting SSH CA %s", ssh_fingerprint(key))

        content = self.config.ssh_ca_key.strip() + "\n"
        changed = write_if_changed(self.path(self.config.ssh_ca_path),
                                   content, mode=0o600)

        directive = f"TrustedUserCAKeys {self.config.ssh_ca_path}"
        sshd_config = self.path(self.config.sshd_config)
        current = sshd_config.read_text() if sshd_config.exists() else ""
        if directive not in current.splitlines():
            LOGGER.info("Adding '%s' to %s", directive, sshd_config)
            if current and not current.endswith("\n"):
                current += "\n"
            sshd_config.parent.mkdir(parents=True, exist_ok=True)
            sshd_config.write_text(current + directive + "\n")
            changed = True

        self.runner(["systemctl", "restart", self.config.ssh_service])
        return changed

    def register_maintenance(self):
        """Run the maintenance script periodically with cron

        The cron file holds exactly one line, so writing it again never
        duplicates the job.

        Returns:
            True if the cron file changed.
        """
        url = self.config.maintenance_script_url
        if not url:
            LOGGER.info("No maintenance script configured, skipping")
            return False

        content = ("# managed by k3sboot\n" +
                   cron_line(url, self.config.maintenance_interval))
        changed = write_if_changed(self.path(CRON_FILE), content, mode=0o644)
        if changed:
            LOGGER.info("Registered maintenance job every %s minutes",
                        self.config.maintenance_interval)
        return changed

    def install_cli(self):
        """Install the AWS CLI matching the host architecture if missing

        Returns:
            True if the CLI was installed.
        """
        if self.which("aws"):
            LOGGER.info("AWS CLI already installed")
            return False

        arch = cli_architecture(self.machine())
        LOGGER.info("Installing AWS CLI for %s ...", arch)
        with tempfile.TemporaryDirectory() as tmp:
            bundle = os.path.join(tmp, "awscliv2.zip")
            self.runner(["curl", "-sSfL", AWS_CLI_URL.format(arch=arch),
                         "-o", bundle])
            self.runner(["unzip", "-qo", bundle, "-d", tmp])
            self.runner([os.path.join(tmp, "aws", "install"), "--update"])
        return True

    def prepare(self):
        """Run all preparation steps

        Raises:
            PrepareError if any step fails
        """
        steps = (("Trusting SSH user CA", self.trust_ssh_ca),
                 ("Registering maintenance job", self.register_maintenance),
                 ("Installing AWS CLI", self.install_cli))

        for title, step in steps:
            LOGGER.banner(title)
            try:
                step()
            except (CommandError, OSError) as err:
                raise PrepareError(f"{title} failed: {err}") from err

        LOGGER.success("Operating system prepared")
