"""
metadata.py
===========

Resolve the identity of this instance from the EC2 instance metadata
service (IMDSv2).

Every metadata read is authenticated with a session token obtained with
a ``PUT`` on ``/latest/api/token``. The token is kept for its TTL (minus a
safety margin) and re-issued when it expired or was rejected.
"""
import time
from collections import namedtuple
from pathlib import Path
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from k3sboot.util.logger import Logger
from k3sboot.util.net import is_ip

LOGGER = Logger(__name__)

TOKEN_PATH = "/latest/api/token"
META_PATH = "/latest/meta-data/"
TOKEN_HEADER = "X-aws-ec2-metadata-token"
TOKEN_TTL_HEADER = "X-aws-ec2-metadata-token-ttl-seconds"
TOKEN_MARGIN = 60
REQUEST_TIMEOUT = 5
SYS_NET_ADDRESSES = "sys/class/net/*/address"


class MetadataError(RuntimeError):
    """The metadata service could not be reached or gave no answer"""


NodeIdentity = namedtuple("NodeIdentity", ["instance_id", "local_ip",
                                           "public_ip", "public_hostname",
                                           "availability_zone",
                                           "network_interface"])
NodeIdentity.__doc__ = """The identity of this instance

It is resolved on every boot and never stored, since the public IP and
hostname change when an instance is stopped and started again.
"""


def find_interface(mac, root="/"):
    """Return the name of the network device with the hardware address ``mac``

    The name depends on the instance type and the image, Nitro instances
    running a recent image call the primary device ``ens5``, Xen instances
    and Amazon Linux 2 ``eth0``. Looking it up in sysfs covers both.

    Args:
        mac (str): the MAC address reported by the metadata service
        root (str): prefix for ``/sys``

    Raises:
        MetadataError if no device has this address
    """
    wanted = mac.strip().lower()
    for address in sorted(Path(root).glob(SYS_NET_ADDRESSES)):
        try:
            if address.read_text().strip().lower() == wanted:
                return address.parent.name
        except OSError as err:
            LOGGER.debug("Can't read %s: %s", address, err)

    raise MetadataError(f"no network device with MAC address {mac}")


class MetadataClient:
    """A small client for the instance metadata service

    Args:
        base_url (str): the metadata endpoint
        token_ttl (int): requested lifetime of a session token in seconds
        opener (callable): used to perform the requests, defaults to
            ``urllib.request.urlopen``
        clock (callable): monotonic clock used for the token expiry
        root (str): prefix for the sysfs lookup of the network device
    """

    def __init__(self, base_url="http://169.254.169.254", token_ttl=21600,
                 opener=urlopen, clock=time.monotonic, root="/"):
        self.base_url = base_url.rstrip("/")
        self.token_ttl = token_ttl
        self._opener = opener
        self._clock = clock
        self._token = None
        self._expires = 0
        self.root = root

    def _request(self, path, method="GET", headers=None):
        req = Request(self.base_url + path, method=method,
                      headers=headers or {})
        with self._opener(req, timeout=REQUEST_TIMEOUT) as resp:
            return resp.read().decode().strip()

    def token(self, refresh=False):
        """Return a valid session token, issuing a new one when needed"""
        if refresh or not self._token or self._clock() >= self._expires:
            LOGGER.debug("Requesting a new metadata session token")
            try:
                self._token = self._request(
                    TOKEN_PATH, method="PUT",
                    headers={TOKEN_TTL_HEADER: str(self.token_ttl)})
            except (HTTPError, URLError, OSError) as err:
                raise MetadataError(
                    f"can't get a metadata token: {err}") from err
            self._expires = self._clock() + max(
                self.token_ttl - TOKEN_MARGIN, 1)
        return self._token

    def get(self, key, default=None):
        """Read a metadata key, e.g. ``instance-id``

        Args:
            key (str): the path below ``/latest/meta-data/``
            default: returned if the key does not exist (HTTP 404). Without
                default a missing key raises :class:`MetadataError`.
        """
        for refresh in (False, True):
            headers = {TOKEN_HEADER: self.token(refresh=refresh)}
            try:
                return self._request(META_PATH + key, headers=headers)
            except HTTPError as err:
                if err.code == 401 and not refresh:
                    LOGGER.debug("Metadata token rejected, refreshing")
                    continue
                if err.code == 404:
                    if default is not None:
                        return default
                    raise MetadataError(
                        f"metadata key '{key}' not found") from err
                raise MetadataError(
                    f"can't read metadata key '{key}': {err}") from err
            except (URLError, OSError) as err:
                raise MetadataError(
                    f"can't read metadata key '{key}': {err}") from err

        raise MetadataError(f"metadata token rejected while reading '{key}'")

    def network_interface(self):
        """Find the name of the primary network interface"""
        return find_interface(self.get("mac"), self.root)

    def resolve(self, network_interface=None):
        """Resolve the :class:`NodeIdentity` of this instance

        Args:
            network_interface (str): use this interface name instead of
                looking it up

        Raises:
            MetadataError if the metadata service can't be used or returns
            an invalid private IP, or no network device matches the
            primary MAC address
        """
        instance_id = self.get("instance-id")
        local_ip = self.get("local-ipv4")
        if not is_ip(local_ip):
            raise MetadataError(f"invalid private IP '{local_ip}'")

        public_ip = self.get("public-ipv4", default="")
        if public_ip and not is_ip(public_ip):
            raise MetadataError(f"invalid public IP '{public_ip}'")

        identity = NodeIdentity(
            instance_id=instance_id,
            local_ip=local_ip,
            public_ip=public_ip,
            public_hostname=self.get("public-hostname", default=""),
            availability_zone=self.get("placement/availability-zone"),
            network_interface=network_interface or self.network_interface())

        LOGGER.debug("Resolved identity: %s", identity)
        return identity


def resolve(config=None, client=None):
    """Resolve the identity of this instance

    Args:
        config (:class:`k3sboot.config.BootConfig`): supplies the metadata
            endpoint and the optional interface override
        client (:class:`MetadataClient`): an existing client to use

    Returns:
        A :class:`NodeIdentity`
    """
    iface = None
    if client is None:
        if config is not None:
            client = MetadataClient(config.metadata_url,
                                    config.metadata_token_ttl)
        else:
            client = MetadataClient()
    if config is not None:
        iface = config.network_interface
    return client.resolve(network_interface=iface)
