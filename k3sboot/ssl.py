"""
ssl.py holds the key handling utilities used while hardening the node
"""
import base64
import hashlib

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization


def load_ssh_ca_keys(content):
    """Parse the trusted user CA keys for the SSH daemon

    Every non empty line which is not a comment must be an OpenSSH public
    key, as accepted by ``TrustedUserCAKeys``.

    Args:
        content (str or bytes): the content of the CA key file

    Return:
        A list of public key objects

    Raises:
        ValueError if a line is not a valid OpenSSH public key or no key
        was found
    """
    if isinstance(content, bytes):
        content = content.decode()

    keys = []
    for num, line in enumerate(content.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            keys.append(serialization.load_ssh_public_key(
                line.encode(), backend=default_backend()))
        except (ValueError, TypeError, IndexError, UnsupportedAlgorithm) as err:
            raise ValueError(
                f"line {num} is not a valid SSH public key: {err}") from err

    if not keys:
        raise ValueError("no SSH public key found")

    return keys


def ssh_fingerprint(key):
    """Return the OpenSSH style SHA256 fingerprint of a public key

    Args:
        key: a public key object, as returned by :func:`load_ssh_ca_keys`
    """
    blob = key.public_bytes(serialization.Encoding.OpenSSH,
                            serialization.PublicFormat.OpenSSH).split()[1]
    digest = hashlib.sha256(base64.b64decode(blob)).digest()
    return "SHA256:" + base64.b64encode(digest).decode().rstrip("=")
