import pytest

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from k3sboot.ssl import load_ssh_ca_keys, ssh_fingerprint


def openssh(key):
    return key.public_key().public_bytes(
        serialization.Encoding.OpenSSH,
        serialization.PublicFormat.OpenSSH).decode()


def test_load_ssh_ca_keys():
    ed = openssh(ed25519.Ed25519PrivateKey.generate())
    rs = openssh(rsa.generate_private_key(public_exponent=65537,
                                          key_size=2048))
    content = f"# user CA\n{ed} ca@example.com\n\n{rs}\n"

    keys = load_ssh_ca_keys(content)
    assert len(keys) == 2
    assert load_ssh_ca_keys(content.encode())


@pytest.mark.parametrize("content", ["", "# only a comment\n",
                                     "ssh-ed25519 !!!", "not a key"])
def test_invalid_keys(content):
    with pytest.raises(ValueError):
        load_ssh_ca_keys(content)


def test_fingerprint():
    key = load_ssh_ca_keys(openssh(ed25519.Ed25519PrivateKey.generate()))[0]
    fingerprint = ssh_fingerprint(key)

    assert fingerprint.startswith("SHA256:")
    assert not fingerprint.endswith("=")
    assert len(fingerprint) == len("SHA256:") + 43
