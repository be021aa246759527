"""
Wait until the local cluster runs its core system pods
"""
import logging
import time

import urllib3
from kubernetes import client as k8sclient
from kubernetes.client.rest import ApiException
from kubernetes.config import kube_config
from kubernetes.config.config_exception import ConfigException

from k3sboot.util.logger import Logger
from k3sboot.util.util import PollTimeout

LOGGER = Logger(__name__)

SYSTEM_NAMESPACE = "kube-system"


class HealthTimeout(PollTimeout):
    """The system pods were not running within the attempt budget"""


def core_api(kubeconfig):
    """Create a ``CoreV1Api`` talking to the cluster of ``kubeconfig``

    A new client is created on every call, since the file may only have
    been written after the previous attempt.
    """
    api_client = kube_config.new_client_from_config(config_file=kubeconfig)
    return k8sclient.CoreV1Api(api_client=api_client)


def component_of(pod_name, components):
    """Return the component a pod belongs to, or None

    Pods of a deployment are named ``<component>-<hash>-<suffix>``.
    """
    for component in components:
        if pod_name == component or pod_name.startswith(component + "-"):
            return component
    return None


def running_components(pods, components):
    """Return the set of ``components`` with at least one running pod

    Args:
        pods (list): ``V1Pod`` objects as returned by the API
        components (list): names of the system components
    """
    running = set()
    for pod in pods:
        if not pod.status or pod.status.phase != "Running":
            continue
        component = component_of(pod.metadata.name, components)
        if component:
            running.add(component)
    return running


class HealthGate:
    """Poll the cluster until enough system components are running

    The check is a coarse liveness proxy: with the default of two running
    components out of ``coredns``, ``local-path-provisioner`` and
    ``metrics-server`` the API server, the scheduler and the pod network
    work.

    Args:
        config (:class:`k3sboot.config.BootConfig`): the node configuration
        api_factory (callable): returns a ``CoreV1Api`` for a kubeconfig
            path
        sleep (callable): waits between two attempts
    """

    def __init__(self, config, api_factory=core_api, sleep=time.sleep):
        self.config = config
        self.api_factory = api_factory
        self.sleep = sleep

    def count_running(self):
        """Return the number of configured components which run a pod

        Any failure to talk to the cluster counts as nothing running.
        """
        logging.getLogger("urllib3").setLevel(logging.ERROR)
        try:
            api = self.api_factory(self.config.kubeconfig)
            pods = api.list_namespaced_pod(SYSTEM_NAMESPACE).items
        except (ApiException, ConfigException, OSError,
                urllib3.exceptions.HTTPError) as err:
            LOGGER.debug("Cluster API not available yet: %s", err)
            return 0
        finally:
            logging.getLogger("urllib3").setLevel(logging.WARNING)

        running = running_components(pods, self.config.health_components)
        LOGGER.debug("Running components: %s", ", ".join(sorted(running)))
        return len(running)

    def wait_healthy(self):
        """Block until the system components run

        Every failed attempt is followed by a sleep of ``health-interval``
        seconds, so a timeout is raised after ``health-attempts`` times
        ``health-interval`` seconds.

        Returns:
            The number of attempts it took

        Raises:
            HealthTimeout when the attempts are exhausted
        """
        attempts = self.config.health_attempts
        interval = self.config.health_interval
        needed = self.config.health_min_running

        LOGGER.banner("Waiting for k3s system pods")
        for attempt in range(1, attempts + 1):
            running = self.count_running()
            if running >= needed:
                LOGGER.success("k3s is up and running (%d/%d components)",
                               running, len(self.config.health_components))
                return attempt

            LOGGER.info("Waiting for k3s to become ready (%d/%d) ...",
                        attempt, attempts)
            self.sleep(interval)

        raise HealthTimeout(
            f"k3s not ready after {attempts} attempts of {interval} seconds",
            attempts=attempts)
