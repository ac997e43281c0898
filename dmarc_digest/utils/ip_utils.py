"""IP address validation helpers"""
import ipaddress
import re

_DOTTED_QUAD = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")


def is_valid_ipv4(ip: str) -> bool:
    """True only for dotted-decimal IPv4 (each octet 0-255)"""
    if not ip or not _DOTTED_QUAD.match(ip):
        return False
    try:
        ipaddress.IPv4Address(ip)
        return True
    except ValueError:
        return False
