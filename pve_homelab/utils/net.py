import ipaddress


def ip_no_cidr(ip4: str) -> str:
    """'10.0.0.10/24' -> '10.0.0.10'. Plain addresses pass through."""
    return ip4.split("/", 1)[0]


def require_cidr(ip4: str, *, owner: str) -> str:
    if "/" not in ip4:
        raise ValueError(f"ip4 for {owner!r} must be in CIDR form (e.g. 10.0.0.10/24). Got: {ip4!r}")
    try:
        ipaddress.IPv4Interface(ip4)
    except ValueError as e:
        raise ValueError(f"Invalid ip4 for {owner!r}: {e}") from e
    return ip4
