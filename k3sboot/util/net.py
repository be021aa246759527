"""Contains utility functions for network stuff"""

from urllib.parse import urlparse

from netaddr import valid_ipv4, valid_ipv6


def is_port(port):
    """Checks if a port is valid"""

    return isinstance(port, int) and 0 < port <= 65535


def is_ip(ip):
    """Checks if an IP is a valid IPv4 or IPv6 address"""

    if not ip or not isinstance(ip, str):
        return False
    return valid_ipv4(ip) or valid_ipv6(ip)


def is_loopback_url(url, loopback_hosts):
    """Checks if the host part of ``url`` is one of ``loopback_hosts``"""

    host = urlparse(url).hostname
    return host in loopback_hosts


def https_url(host, port):
    """Format an https URL, wrapping IPv6 addresses in brackets"""

    if is_ip(host) and valid_ipv6(host):
        host = f"[{host}]"
    return f"https://{host}:{port}"
