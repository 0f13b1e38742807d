"""``pytest_testcontainer`` launches single containers for integration tests,
tells you where to reach them, waits until they are ready and removes them
afterwards.

"""

from .container import ContainerHandle
from .container import ContainerRequest
from .container import run_container
from .errors import ContainerStartupError
from .errors import EngineConnectionError
from .errors import EngineOperationError
from .errors import EngineTimeoutError
from .errors import MappedPortNotFoundError
from .errors import PortSpecError
from .errors import ReadinessError
from .errors import ReadinessTimeoutError
from .errors import RequestValidationError
from .errors import TestcontainerError
from .helpers import add_logging_level_options
from .helpers import set_logging_level_from_cli_args
from .inspect import ExposedPort
from .inspect import NetworkProtocol
from .inspect import PortForwarding
from .runtime import DockerRuntime
from .runtime import OciRuntimeBase
from .runtime import PodmanRuntime
from .runtime import get_selected_runtime
from .wait import AllOf
from .wait import HealthCheckStrategy
from .wait import HttpStrategy
from .wait import ListeningPortStrategy
from .wait import LogMessageStrategy
from .wait import ReadinessStrategy

__all__ = [
    "ContainerHandle",
    "ContainerRequest",
    "run_container",
    "ContainerStartupError",
    "EngineConnectionError",
    "EngineOperationError",
    "EngineTimeoutError",
    "MappedPortNotFoundError",
    "PortSpecError",
    "ReadinessError",
    "ReadinessTimeoutError",
    "RequestValidationError",
    "TestcontainerError",
    "add_logging_level_options",
    "set_logging_level_from_cli_args",
    "ExposedPort",
    "NetworkProtocol",
    "PortForwarding",
    "DockerRuntime",
    "OciRuntimeBase",
    "PodmanRuntime",
    "get_selected_runtime",
    "AllOf",
    "HealthCheckStrategy",
    "HttpStrategy",
    "ListeningPortStrategy",
    "LogMessageStrategy",
    "ReadinessStrategy",
]
