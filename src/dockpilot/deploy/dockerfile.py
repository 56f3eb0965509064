"""Dockerfile inspection helpers."""

import re

_EXPOSE = re.compile(r"^\s*EXPOSE\s+(.+)$", re.IGNORECASE | re.MULTILINE)


def parse_exposed_ports(content: str) -> list[tuple[int, str]]:
    """Return ``(port, protocol)`` pairs declared by EXPOSE instructions.

    Ranges and build-arg references are skipped.

    Example:
        >>> parse_exposed_ports("FROM node:20\\nEXPOSE 3000 9229/udp\\n")
        [(3000, 'tcp'), (9229, 'udp')]
    """
    ports: list[tuple[int, str]] = []
    for match in _EXPOSE.finditer(content):
        for token in match.group(1).split():
            port, _, protocol = token.partition("/")
            if not port.isdigit():
                continue
            entry = (int(port), (protocol or "tcp").lower())
            if entry not in ports:
                ports.append(entry)
    return ports

