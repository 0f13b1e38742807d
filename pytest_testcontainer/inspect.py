"""This module contains the class definitions that represent the output of
:command:`$runtime inspect $ctr_id`.

"""
import enum
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from typing import Dict
from typing import FrozenSet
from typing import List
from typing import NamedTuple
from typing import Optional
from typing import TypedDict


@enum.unique
class NetworkProtocol(enum.Enum):
    """Network protocols supporting port forwarding."""

    #: Transmission Control Protocol
    TCP = "tcp"
    #: User Datagram Protocol
    UDP = "udp"
    #: Stream Control Transmission Protocol
    SCTP = "sctp"

    def __str__(self) -> str:
        return self.value


class ExposedPort(NamedTuple):
    """A port that a container declares as exposed, e.g. via ``EXPOSE`` or by
    publishing it.

    """

    #: the port number inside the container
    port: int

    #: the protocol of the port
    protocol: NetworkProtocol = NetworkProtocol.TCP

    def __str__(self) -> str:
        return f"{self.port}/{self.protocol}"

    @staticmethod
    def parse(port_and_proto: str) -> "ExposedPort":
        """Parse the keys used by the container runtimes for ports, i.e.
        ``$port/$proto`` or just ``$port``:

        >>> ExposedPort.parse("8080/udp")
        ExposedPort(port=8080, protocol=<NetworkProtocol.UDP: 'udp'>)

        """
        port, _, proto = port_and_proto.partition("/")
        return ExposedPort(
            port=int(port), protocol=NetworkProtocol(proto.lower() or "tcp")
        )


@dataclass(frozen=True)
class PortForwarding:
    """Representation of a port forward from a container to the host.

    Instances are created by parsing the port export specifications of a
    :py:class:`~pytest_testcontainer.container.ContainerRequest` and by
    inspecting a running container, in which case :py:attr:`host_port` is the
    port that the container runtime assigned.

    """

    #: The port which shall be exposed by the container.
    container_port: int

    #: The protocol which the exposed port is using. Defaults to TCP.
    protocol: NetworkProtocol = NetworkProtocol.TCP

    #: The port as which the port from :py:attr:`container_port` is exposed on
    #: the host. ``-1`` lets the container runtime pick a free port.
    host_port: int = -1

    #: The IP address to which to bind. By default, it will be all addresses.
    bind_ip: str = ""

    @property
    def exposed_port(self) -> ExposedPort:
        """The container side of this port forwarding."""
        return ExposedPort(self.container_port, self.protocol)

    @property
    def forward_cli_args(self) -> List[str]:
        """Returns a list of command line arguments for the container create
        command to publish this port forwarding.

        """
        host_port = "" if self.host_port == -1 else str(self.host_port)

        if self.bind_ip:
            # If it contains a colon, it must be an IPv6 address and thus must
            # be wrapped in brackets for the launch command
            if ":" in self.bind_ip:
                bind_ip = f"[{self.bind_ip}]"
            else:
                bind_ip = self.bind_ip
            host = f"{bind_ip}:{host_port}:"
        else:
            host = f"{host_port}:" if host_port else ""

        return ["-p", f"{host}{self.container_port}/{self.protocol}"]

    def __str__(self) -> str:
        return str(self.forward_cli_args)


class ContainerInspectHealthCheck(TypedDict, total=False):
    """Dictionary created by loading the json output of :command:`podman inspect
    $img_id | jq '.[0]["Healthcheck]` or :command:`docker inspect $img_id | jq
    '.[0]["Config"]["Healthcheck]`.

    """

    Test: List[str]
    Interval: int
    Timeout: int
    StartPeriod: int
    Retries: int


@enum.unique
class ContainerHealth(enum.Enum):
    """Possible states of a container's health using the `HEALTHCHECK
    <https://docs.docker.com/engine/reference/builder/#healthcheck>`_ property
    of a container image.

    """

    #: the container has no health check defined
    NO_HEALTH_CHECK = ""
    #: the container is healthy
    HEALTHY = "healthy"
    #: the health check did not complete yet or did not fail often enough
    STARTING = "starting"
    #: the healthcheck failed
    UNHEALTHY = "unhealthy"


_DEFAULT_START_PERIOD = timedelta(seconds=0)
_DEFAULT_INTERVAL = timedelta(seconds=30)
_DEFAULT_TIMEOUT = timedelta(seconds=30)
_DEFAULT_RETRIES = 3


@dataclass(frozen=True)
class HealthCheck:
    """The HEALTHCHECK of a container image."""

    #: startup period of the container during which healthcheck failures will
    #: not count towards the failure count
    start_period: timedelta = field(default=_DEFAULT_START_PERIOD)

    #: healthcheck command is run every interval
    interval: timedelta = field(default=_DEFAULT_INTERVAL)

    #: timeout of the healthcheck command after which it is considered unsuccessful
    timeout: timedelta = field(default=_DEFAULT_TIMEOUT)

    #: how often the healthcheck command is retried
    retries: int = _DEFAULT_RETRIES

    @property
    def max_wait_time(self) -> timedelta:
        """The maximum time to wait until a container can become healthy"""
        return self.start_period + self.retries * self.interval + self.timeout

    @staticmethod
    def from_container_inspect(
        inspect_json: ContainerInspectHealthCheck,
    ) -> "HealthCheck":
        """Convert the json-loaded output of :command:`podman inspect $ctr` or
        :command:`docker inspect $ctr` into a :py:class:`HealthCheck`.

        The runtimes report all durations in nanoseconds, a value of ``0``
        means that the default is used.

        """

        def _duration(key: str, default: timedelta) -> timedelta:
            nanoseconds = inspect_json.get(key)  # type: ignore[misc]
            if not nanoseconds:
                return default
            return timedelta(microseconds=nanoseconds / 1000)

        return HealthCheck(
            start_period=_duration("StartPeriod", _DEFAULT_START_PERIOD),
            interval=_duration("Interval", _DEFAULT_INTERVAL),
            timeout=_duration("Timeout", _DEFAULT_TIMEOUT),
            retries=inspect_json.get("Retries") or _DEFAULT_RETRIES,
        )


@dataclass(frozen=True)
class ContainerState:
    #: status of the container, e.g. ``running``, ``exited``, etc.
    status: str
    #: True if the container is running
    running: bool
    #: True if the container is restarting
    restarting: bool
    #: True if the container is dead
    dead: bool
    #: exit code of the main process, only meaningful if it is not running
    exit_code: int = 0
    #: status of the last health check run for this container image
    health: ContainerHealth = ContainerHealth.NO_HEALTH_CHECK


@dataclass(frozen=True)
class Config:
    #: name of image used to launch this container
    image: str

    #: command defined in this container
    cmd: List[str] = field(default_factory=list)

    #: environment variables of the container
    env: Dict[str, str] = field(default_factory=dict)

    #: labels of the container
    labels: Dict[str, str] = field(default_factory=dict)

    #: ports declared as exposed by the image or by publishing them
    exposed_ports: FrozenSet[ExposedPort] = frozenset()

    #: optional healthcheck defined for the underlying container image
    healthcheck: Optional[HealthCheck] = None


@dataclass(frozen=True)
class ContainerNetworkSettings:
    """Network specific settings of a container."""

    #: list of ports forwarded from the container to the host, with the host
    #: ports assigned by the container runtime
    ports: List[PortForwarding] = field(default_factory=list)

    #: IP Address of the container, if it has one
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class ContainerInspect:
    """Common subset of the information exposed via :command:`podman inspect`
    and :command:`docker inspect`.

    """

    #: The container's ID
    id: str

    #: the container's name
    name: str

    #: current state of the container
    state: ContainerState

    #: hash digest of the image
    image_hash: str

    #: general configuration of the container (mostly inherited from the used image)
    config: Config

    #: Current network settings of this container
    network: ContainerNetworkSettings
