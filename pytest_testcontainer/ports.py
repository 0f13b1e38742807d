"""Parsing of port export specifications like ``8080:80/tcp`` into
:py:class:`~pytest_testcontainer.inspect.PortForwarding` instances.

The accepted format is the one of :command:`docker create --publish`::

    [ip:][hostPort:]containerPort[/protocol]

where ``hostPort`` may be empty (``127.0.0.1::80``), ``ip`` may be an IPv6
address in brackets (``[::1]:8080:80``) and both ports may be ranges
(``8000-8001:80-81``) of the same length.

"""
import ipaddress
from typing import Dict
from typing import FrozenSet
from typing import Iterable
from typing import List
from typing import Tuple

from pytest_testcontainer.errors import PortSpecError
from pytest_testcontainer.inspect import ExposedPort
from pytest_testcontainer.inspect import NetworkProtocol
from pytest_testcontainer.inspect import PortForwarding

_MAX_PORT = 65535


def _split_ip(spec: str, rest: str) -> Tuple[str, str]:
    """Split off a leading IPv6 address in brackets from ``rest``."""
    if not rest.startswith("["):
        return "", rest

    closing = rest.find("]")
    if closing == -1 or rest[closing + 1 : closing + 2] != ":":
        raise PortSpecError(spec, "unterminated IPv6 address")
    return rest[1:closing], rest[closing + 2 :]


def _parse_port_range(spec: str, port_range: str) -> Tuple[int, int]:
    start, sep, end = port_range.partition("-")
    try:
        first = int(start)
        last = int(end) if sep else first
    except ValueError as val_err:
        raise PortSpecError(spec, f"invalid port '{port_range}'") from val_err

    if not 0 < first <= _MAX_PORT or not 0 < last <= _MAX_PORT:
        raise PortSpecError(spec, f"port '{port_range}' is out of range")
    if last < first:
        raise PortSpecError(spec, f"invalid port range '{port_range}'")
    return first, last


def parse_port_spec(spec: str) -> List[PortForwarding]:
    """Parse a single port export specification into one port forwarding per
    container port.

    >>> parse_port_spec("8080:80")
    [PortForwarding(container_port=80, protocol=<NetworkProtocol.TCP: 'tcp'>, host_port=8080, bind_ip='')]

    A specification without a host port results in a host port of ``-1``,
    i.e. the container runtime picks a free port on the host.

    """
    if not spec or spec != spec.strip():
        raise PortSpecError(spec, "empty or padded specification")

    ports, _, proto = spec.rpartition("/") if "/" in spec else (spec, "", "")
    try:
        protocol = NetworkProtocol(proto.lower() or "tcp")
    except ValueError as val_err:
        raise PortSpecError(spec, f"invalid protocol '{proto}'") from val_err

    bind_ip, ports = _split_ip(spec, ports)
    parts = ports.split(":")
    if bind_ip:
        if len(parts) != 2:
            raise PortSpecError(spec, "expected [ip]:hostPort:containerPort")
        host_ports, container_ports = parts
    elif len(parts) == 1:
        host_ports, container_ports = "", parts[0]
    elif len(parts) == 2:
        host_ports, container_ports = parts
    elif len(parts) == 3:
        bind_ip, host_ports, container_ports = parts
    else:
        raise PortSpecError(spec, "too many colons")

    if bind_ip:
        try:
            ipaddress.ip_address(bind_ip)
        except ValueError as val_err:
            raise PortSpecError(
                spec, f"invalid IP address '{bind_ip}'"
            ) from val_err

    if not container_ports:
        raise PortSpecError(spec, "no container port")

    first, last = _parse_port_range(spec, container_ports)
    if host_ports:
        first_host, last_host = _parse_port_range(spec, host_ports)
        if last_host - first_host != last - first:
            raise PortSpecError(
                spec, "host and container port ranges differ in length"
            )
    else:
        first_host = -1

    return [
        PortForwarding(
            container_port=port,
            protocol=protocol,
            host_port=-1 if first_host == -1 else first_host + offset,
            bind_ip=bind_ip,
        )
        for offset, port in enumerate(range(first, last + 1))
    ]


def parse_port_specs(
    specs: Iterable[str],
) -> Tuple[FrozenSet[ExposedPort], Dict[ExposedPort, List[PortForwarding]]]:
    """Parse all port export specifications and return the set of exposed
    container ports and the host bindings of each exposed port.

    A :py:class:`~pytest_testcontainer.errors.PortSpecError` is raised for the
    first invalid specification.

    """
    bindings: Dict[ExposedPort, List[PortForwarding]] = {}
    for spec in specs:
        for forward in parse_port_spec(spec):
            bindings.setdefault(forward.exposed_port, []).append(forward)

    return frozenset(bindings), bindings
