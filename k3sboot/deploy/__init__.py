"""

.. _deploy:

k3sboot.deploy
--------------

Steps which talk to the freshly installed cluster: waiting for the system
pods (:py:mod:`k3sboot.deploy.health`) and publishing the cluster
credentials (:py:mod:`k3sboot.deploy.kubeconfig`).
"""
