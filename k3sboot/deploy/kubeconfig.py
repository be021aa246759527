"""
kubeconfig.py
=============

Publish the credentials of the local cluster for a control plane outside
the instance.

k3s writes its kubeconfig with a loopback server address. The publisher
waits for this file, points every loopback server at the public name of
the node and uploads the result as ``{cluster_id}.yaml`` to the bucket.
The local file is only read.

The publisher runs as a systemd unit on every boot, since the public name
of an instance changes when it is stopped and started.
"""
import sys
import time
from pathlib import Path

import yaml

from k3sboot import LOOPBACK_HOSTS, PUBLISHER_UNIT
from k3sboot.cloud.metadata import MetadataError, resolve
from k3sboot.cloud.storage import S3Store, StorageError, object_key
from k3sboot.config import config_path
from k3sboot.util.logger import Logger
from k3sboot.util.net import https_url, is_loopback_url
from k3sboot.util.util import poll_until, retry, run_cmd, write_if_changed

LOGGER = Logger(__name__)

UNIT_DIR = "/etc/systemd/system"
UNIT_TEMPLATE = """\
[Unit]
Description=Publish the k3s kubeconfig of this node
After=k3s.service network-online.target
Wants=network-online.target

[Service]
Type=oneshot
ExecStart={python} -m k3sboot publish --config {config}
Restart=on-failure
RestartSec=30

[Install]
WantedBy=multi-user.target
"""


class PublishError(RuntimeError):
    """The kubeconfig could not be rewritten or uploaded"""


def rewrite_kubeconfig(content, public_endpoint, port,
                       loopback_hosts=LOOPBACK_HOSTS):
    """Point the loopback servers of a kubeconfig to ``public_endpoint``

    The document is parsed, only the ``server`` fields of clusters using a
    loopback address are replaced. Every other field keeps its value.

    Args:
        content (str): the kubeconfig as written by k3s
        public_endpoint (str): public host name or IP of the node
        port (int): the port the API server is reachable on from outside

    Returns:
        The rewritten kubeconfig as YAML string

    Raises:
        PublishError if the document is not a kubeconfig or has no
        loopback server
    """
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise PublishError(f"can't parse kubeconfig: {err}") from err

    if not isinstance(doc, dict) or not isinstance(doc.get('clusters'), list):
        raise PublishError("kubeconfig has no clusters")

    server = https_url(public_endpoint, port)
    replaced = 0
    for entry in doc['clusters']:
        cluster = (entry or {}).get('cluster') or {}
        if is_loopback_url(cluster.get('server', ''), loopback_hosts):
            cluster['server'] = server
            replaced += 1

    if not replaced:
        raise PublishError("kubeconfig has no loopback server to replace")

    return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)


def wait_for_kubeconfig(path, interval=1, timeout=None, cancel=None,
                        sleep=time.sleep):
    """Block until the kubeconfig at ``path`` exists

    Without ``timeout`` this waits forever.
    """
    path = Path(path)
    if not path.exists():
        LOGGER.info("Waiting for %s ...", path)
    poll_until(path.exists, interval, timeout=timeout, cancel=cancel,
               sleep=sleep, description=f"{path} to exist")
    return path


class CredentialPublisher:
    """Rewrite and upload the kubeconfig of this node

    Args:
        config (:class:`k3sboot.config.BootConfig`): the node configuration
        store (:class:`k3sboot.cloud.storage.S3Store`): where to upload,
            created from the configuration when not given
        resolver (callable): returns the current
            :class:`k3sboot.cloud.metadata.NodeIdentity`
        sleep (callable): waits between polls and upload retries
        cancel (threading.Event): stops waiting for the kubeconfig
    """

    def __init__(self, config, store=None, resolver=None, sleep=time.sleep,
                 cancel=None):
        self.config = config
        self._store = store
        self.resolver = resolver or (lambda: resolve(config))
        self.sleep = sleep
        self.cancel = cancel

    @property
    def store(self):
        """The object store, created on first use"""
        if self._store is None:
            self._store = S3Store.from_config(self.config)
        return self._store

    def public_endpoint(self):
        """The current public host name of the node

        Falls back to the public IP for instances without a public DNS
        name.
        """
        try:
            identity = self.resolver()
        except MetadataError as err:
            raise PublishError(f"can't resolve public endpoint: {err}") from err

        endpoint = identity.public_hostname or identity.public_ip
        if not endpoint:
            raise PublishError("instance has no public host name or IP")
        return endpoint

    def upload(self, content):
        """Upload ``content`` with a fixed number of retries"""
        upload = retry(StorageError, tries=self.config.publish_retries,
                       delay=self.config.publish_retry_delay,
                       logger=LOGGER.warning, sleep=self.sleep)(
                           self.store.upload)
        try:
            return upload(object_key(self.config.cluster_id), content)
        except StorageError as err:
            raise PublishError(str(err)) from err

    def publish(self):
        """Wait for the kubeconfig, rewrite and upload it

        Returns:
            The URL of the uploaded object

        Raises:
            PublishError if the kubeconfig can't be rewritten or uploaded
        """
        LOGGER.banner("Publishing kubeconfig")
        path = wait_for_kubeconfig(self.config.kubeconfig, cancel=self.cancel,
                                   sleep=self.sleep)
        endpoint = self.public_endpoint()
        LOGGER.info("Public endpoint is %s:%s", endpoint,
                    self.config.external_port)

        content = rewrite_kubeconfig(path.read_text(), endpoint,
                                     self.config.external_port)
        url = self.upload(content)
        LOGGER.success("Published kubeconfig to %s", url)
        return url


def unit_content(path, python=None):
    """The systemd unit running the publisher on every boot"""
    return UNIT_TEMPLATE.format(python=python or sys.executable,
                                config=path)


def register_publisher_unit(config, root="/", runner=run_cmd):
    """Install, enable and start the publisher unit

    The unit file is only rewritten when its content changed.

    Returns:
        True if the unit file changed
    """
    LOGGER.banner("Registering kubeconfig publisher")
    unit = Path(root) / UNIT_DIR.lstrip("/") / PUBLISHER_UNIT
    content = unit_content(config_path(config.path))
    changed = write_if_changed(unit, content, mode=0o644)
    if changed:
        runner(["systemctl", "daemon-reload"])
    runner(["systemctl", "enable", PUBLISHER_UNIT])
    runner(["systemctl", "restart", "--no-block", PUBLISHER_UNIT])
    return changed
