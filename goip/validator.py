from ipaddress import ip_address, ip_network

PRIVATE_NETWORKS = tuple(
    ip_network(cidr)
    for cidr in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)


def is_valid_ip(value: str) -> bool:
    """Return True when `value` is an IPv4 or IPv6 literal."""
    try:
        ip_address(value)
    except ValueError:
        return False
    return True


def is_private_ip(value: str) -> bool:
    """Return True for loopback, link-local and RFC 1918 / ULA addresses."""
    try:
        address = ip_address(value)
    except ValueError:
        return False
    return any(address.version == network.version and address in network for network in PRIVATE_NETWORKS)
