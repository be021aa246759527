"""
tests for k3sboot.deploy.kubeconfig
"""
import copy
from unittest.mock import MagicMock, call

import pytest
import yaml

from k3sboot.cloud.metadata import MetadataError
from k3sboot.cloud.storage import StorageError
from k3sboot.deploy.kubeconfig import (CredentialPublisher, PublishError,
                                       register_publisher_unit,
                                       rewrite_kubeconfig, unit_content,
                                       wait_for_kubeconfig)

from .testdata import IDENTITY, K3S_YAML, make_config


def test_rewrite_kubeconfig():
    original = yaml.safe_load(K3S_YAML)

    rewritten = yaml.safe_load(
        rewrite_kubeconfig(K3S_YAML, "h.example.com", 9443))

    assert rewritten['clusters'][0]['cluster']['server'] == \
        "https://h.example.com:9443"

    expected = copy.deepcopy(original)
    expected['clusters'][0]['cluster']['server'] = "https://h.example.com:9443"
    assert rewritten == expected


def test_rewrite_only_touches_server():
    content = K3S_YAML.replace("name: default\ncontexts",
                               "name: '127.0.0.1:6443'\ncontexts")
    rewritten = yaml.safe_load(
        rewrite_kubeconfig(content, "h.example.com", 9443))

    assert rewritten['clusters'][0]['name'] == "127.0.0.1:6443"


def test_rewrite_keeps_remote_servers():
    doc = yaml.safe_load(K3S_YAML)
    remote = copy.deepcopy(doc['clusters'][0])
    remote['name'] = 'remote'
    remote['cluster']['server'] = 'https://10.1.2.3:6443'
    doc['clusters'].append(remote)

    rewritten = yaml.safe_load(
        rewrite_kubeconfig(yaml.safe_dump(doc), "h.example.com", 9443))
    assert rewritten['clusters'][1]['cluster']['server'] == \
        'https://10.1.2.3:6443'


@pytest.mark.parametrize("content", [
    "",
    "clusters: [unclosed",
    "apiVersion: v1\nkind: Config\n",
    K3S_YAML.replace("127.0.0.1", "10.0.0.1"),
])
def test_rewrite_invalid(content):
    with pytest.raises(PublishError):
        rewrite_kubeconfig(content, "h.example.com", 9443)


def test_wait_for_kubeconfig_polls_until_file_exists(tmp_path):
    path = tmp_path / "k3s.yaml"
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 5:
            path.write_text(K3S_YAML)

    assert wait_for_kubeconfig(path, sleep=sleep) == path
    assert sleeps == [1] * 5


@pytest.fixture
def kubeconfig(tmp_path):
    path = tmp_path / "k3s.yaml"
    path.write_text(K3S_YAML)
    return path


def test_publish(tmp_path, kubeconfig):
    store = MagicMock()
    store.upload.return_value = "s3://kubeconfigs/qa-cluster-1.yaml"
    publisher = CredentialPublisher(make_config(tmp_path), store=store,
                                    resolver=lambda: IDENTITY,
                                    sleep=MagicMock())

    assert publisher.publish() == "s3://kubeconfigs/qa-cluster-1.yaml"

    key, body = store.upload.call_args[0]
    assert key == "qa-cluster-1.yaml"
    server = yaml.safe_load(body)['clusters'][0]['cluster']['server']
    assert server == ("https://ec2-3-120-45-67.eu-central-1.compute."
                      "amazonaws.com:9443")
    # the local file is the source of truth and stays untouched
    assert kubeconfig.read_text() == K3S_YAML


def test_publish_falls_back_to_public_ip(tmp_path, kubeconfig):
    store = MagicMock()
    identity = IDENTITY._replace(public_hostname="")
    publisher = CredentialPublisher(make_config(tmp_path), store=store,
                                    resolver=lambda: identity)
    publisher.publish()

    body = store.upload.call_args[0][1]
    assert "https://3.120.45.67:9443" in body


def test_publish_without_public_address(tmp_path, kubeconfig):
    identity = IDENTITY._replace(public_hostname="", public_ip="")
    publisher = CredentialPublisher(make_config(tmp_path), store=MagicMock(),
                                    resolver=lambda: identity)
    with pytest.raises(PublishError):
        publisher.publish()


def test_publish_metadata_failure(tmp_path, kubeconfig):
    def resolver():
        raise MetadataError("unreachable")

    publisher = CredentialPublisher(make_config(tmp_path), store=MagicMock(),
                                    resolver=resolver)
    with pytest.raises(PublishError):
        publisher.publish()


def test_upload_is_retried(tmp_path, kubeconfig):
    store = MagicMock()
    store.upload.side_effect = [StorageError("throttled"),
                                "s3://kubeconfigs/qa-cluster-1.yaml"]
    sleep = MagicMock()
    publisher = CredentialPublisher(make_config(tmp_path), store=store,
                                    resolver=lambda: IDENTITY, sleep=sleep)

    assert publisher.publish() == "s3://kubeconfigs/qa-cluster-1.yaml"
    assert store.upload.call_count == 2
    sleep.assert_called_once_with(5)


def test_upload_gives_up(tmp_path, kubeconfig):
    store = MagicMock()
    store.upload.side_effect = StorageError("access denied")
    publisher = CredentialPublisher(make_config(tmp_path, publish_retries=2),
                                    store=store, resolver=lambda: IDENTITY,
                                    sleep=MagicMock())

    with pytest.raises(PublishError):
        publisher.publish()
    assert store.upload.call_count == 2


def test_unit_content():
    unit = unit_content("/etc/k3sboot/config.yml", python="/usr/bin/python3")

    assert ("ExecStart=/usr/bin/python3 -m k3sboot publish "
            "--config /etc/k3sboot/config.yml") in unit
    assert "Type=oneshot" in unit
    assert "WantedBy=multi-user.target" in unit


def test_register_publisher_unit(tmp_path):
    runner = MagicMock()
    config = make_config()

    assert register_publisher_unit(config, root=tmp_path, runner=runner)
    unit = tmp_path / "etc/systemd/system/k3sboot-publish.service"
    assert "--config /etc/k3sboot/config.yml" in unit.read_text()
    assert runner.call_args_list == [
        call(["systemctl", "daemon-reload"]),
        call(["systemctl", "enable", "k3sboot-publish.service"]),
        call(["systemctl", "restart", "--no-block",
              "k3sboot-publish.service"])]

    runner.reset_mock()
    assert not register_publisher_unit(config, root=tmp_path, runner=runner)
    assert call(["systemctl", "daemon-reload"]) not in runner.call_args_list
    assert runner.call_count == 2
