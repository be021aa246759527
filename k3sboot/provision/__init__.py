"""

.. _provision:

k3sboot.provision
-----------------

Steps which change the host itself: hardening the operating system
(:py:mod:`k3sboot.provision.os_prep`) and installing the cluster runtime
(:py:mod:`k3sboot.provision.runtime`).

Both run as root early during boot, before the node is part of a cluster.
"""
