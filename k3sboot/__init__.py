# pylint: disable=missing-docstring
from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version('k3sboot')
except PackageNotFoundError:
    __version__ = '0.4.0'

# Defining some constants
K3S_INSTALL_URL = "https://get.k3s.io"
K3S_KUBECONFIG = "/etc/rancher/k3s/k3s.yaml"
K3S_DEFAULT_PORT = 6443
LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")
PUBLISHER_UNIT = "k3sboot-publish.service"
