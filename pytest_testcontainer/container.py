"""The container module contains the request describing a container, the
handle to a running container and :py:func:`run_container`, which turns the
former into the latter.

"""
import tempfile
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from hashlib import sha3_256
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING
from typing import Any
from typing import Dict
from typing import FrozenSet
from typing import List
from typing import Optional
from typing import Type

import testinfra
from filelock import FileLock

from pytest_testcontainer.auth import RegistryCredential
from pytest_testcontainer.errors import ContainerStartupError
from pytest_testcontainer.errors import EngineOperationError
from pytest_testcontainer.errors import MappedPortNotFoundError
from pytest_testcontainer.errors import RequestValidationError
from pytest_testcontainer.errors import TestcontainerError
from pytest_testcontainer.helpers import get_always_pull_option
from pytest_testcontainer.inspect import ContainerInspect
from pytest_testcontainer.inspect import ExposedPort
from pytest_testcontainer.logging import _logger
from pytest_testcontainer.ports import parse_port_specs
from pytest_testcontainer.runtime import OciRuntimeBase
from pytest_testcontainer.runtime import get_selected_runtime

if TYPE_CHECKING:  # pragma: no cover
    from pytest_testcontainer.wait import ReadinessStrategy


@dataclass(frozen=True)
class ContainerRequest:
    """Description of the container that :py:func:`run_container` shall
    launch.

    """

    #: environment variables that are set in the container
    env: Dict[str, str] = field(default_factory=dict)

    #: ports to publish in the form ``[ip:][hostPort:]containerPort[/proto]``,
    #: omitting the host port lets the runtime pick a free one
    exported_ports: List[str] = field(default_factory=list)

    #: command overriding the image's ``CMD``, it is split on whitespace. The
    #: image default is used if it is empty.
    cmd: str = ""

    #: credentials for pulling the image, either ``$user:$password`` or the
    #: base64 encoded authentication object of the Docker Engine API
    registry_cred: str = ""

    #: optional strategy to wait for the container to become ready
    waiting_for: Optional["ReadinessStrategy"] = None

    #: optional name of the container
    name: str = ""

    #: labels that are added to the container
    labels: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for key in self.env:
            if not key or "=" in key:
                raise RequestValidationError(
                    f"Invalid environment variable name '{key}'"
                )

    @property
    def command(self) -> Optional[List[str]]:
        """The command line as a list of arguments or ``None`` if the image
        default shall be used.

        """
        return self.cmd.split() or None

    @property
    def env_list(self) -> List[str]:
        """The environment variables as ``KEY=VALUE`` strings."""
        return [f"{key}={value}" for key, value in self.env.items()]


class ContainerHandle:
    """Handle to a container that has been created by
    :py:func:`run_container`.

    The result of the first successful inspection of the container is cached
    and reused by all accessors, as the assigned address and port bindings of
    a container do not change while it is running. Call :py:meth:`refresh` to
    inspect the container again on the next access.

    The handle can be used as a context manager, which terminates the
    container on exit.

    """

    def __init__(
        self, container_id: str, container_runtime: OciRuntimeBase
    ) -> None:
        if not container_id:
            raise ValueError("A container id must be provided")

        self._container_id = container_id
        self._container_runtime = container_runtime

        self._lock = threading.Lock()
        self._inspect: Optional[ContainerInspect] = None
        self._pending_inspect: "Optional[Future[ContainerInspect]]" = None
        self._generation = 0
        self._terminated = False

    @property
    def container_id(self) -> str:
        """ID of the container assigned by the container runtime."""
        return self._container_id

    @property
    def terminated(self) -> bool:
        """Whether :py:meth:`terminate` succeeded for this handle."""
        return self._terminated

    @property
    def container_runtime(self) -> OciRuntimeBase:
        """The container runtime via which the container was launched."""
        return self._container_runtime

    def __repr__(self) -> str:
        return (
            f"ContainerHandle(container_id={self._container_id!r}, "
            f"container_runtime={self._container_runtime})"
        )

    @property
    def inspect(self) -> ContainerInspect:
        """The (cached) result of :command:`$runtime inspect $ctr_id`.

        Concurrent accesses before the first inspection finished share a
        single call to the container runtime and all observe its result or
        its exception. Failed inspections are not cached.

        """
        with self._lock:
            if self._inspect is not None:
                return self._inspect
            pending = self._pending_inspect
            if pending is None:
                pending = self._pending_inspect = Future()
                is_owner = True
            else:
                is_owner = False
            generation = self._generation

        if not is_owner:
            return pending.result()

        try:
            inspect = self._container_runtime.inspect_container(
                self._container_id
            )
        except BaseException as exc:
            with self._lock:
                if self._pending_inspect is pending:
                    self._pending_inspect = None
            pending.set_exception(exc)
            raise

        with self._lock:
            if self._pending_inspect is pending:
                self._pending_inspect = None
            # a refresh() during the inspection makes its result stale
            if generation == self._generation:
                self._inspect = inspect
        pending.set_result(inspect)
        return inspect

    def refresh(self) -> None:
        """Drop the cached inspection, the next access of any accessor
        inspects the container again. An inspection that is still running
        does not populate the cache.

        """
        with self._lock:
            self._generation += 1
            self._inspect = None
            self._pending_inspect = None

    def ip_address(self) -> str:
        """Returns the IP address of the container, or an empty string if it
        has none (e.g. with host networking).

        """
        return self.inspect.network.ip_address or ""

    def mapped_port(self, container_port: int) -> int:
        """Returns the port on the host to which ``container_port`` is
        published. Only the port number is compared, the protocol is ignored.

        Raises:
            MappedPortNotFoundError: the container port is not published

        """
        for forward in self.inspect.network.ports:
            if forward.container_port == container_port:
                _logger.info("Port %d -> %d", container_port, forward.host_port)
                return forward.host_port

        raise MappedPortNotFoundError(container_port)

    def liveness_check_ports(self) -> FrozenSet[ExposedPort]:
        """Returns all ports that the container declares as exposed."""
        return self.inspect.config.exposed_ports

    def logs(self, timeout: Optional[timedelta] = None) -> str:
        """Returns the output of the container so far.

        Raises:
            EngineTimeoutError: the runtime did not return the logs within
                ``timeout``

        """
        return self._container_runtime.get_container_logs(
            self._container_id,
            timeout=None if timeout is None else timeout.total_seconds(),
        )

    @property
    def connection(self) -> Any:
        """A testinfra connection to run commands inside the container."""
        return testinfra.get_host(
            f"{self._container_runtime.runner_binary}://{self._container_id}"
        )

    def terminate(self) -> None:
        """Forcibly remove the container.

        Calling this twice raises an
        :py:class:`~pytest_testcontainer.errors.EngineOperationError`, as the
        container no longer exists.

        """
        _logger.debug("Terminating container %s", self._container_id)
        self._container_runtime.remove_container(self._container_id)
        self._terminated = True

    def __enter__(self) -> "ContainerHandle":
        return self

    def __exit__(
        self,
        __exc_type: Optional[Type[BaseException]],
        __exc_value: Optional[BaseException],
        __traceback: Optional[TracebackType],
    ) -> None:
        self.terminate()


def _pull_lock_path(image: str) -> Path:
    return (
        Path(tempfile.gettempdir())
        / f"pytest_testcontainer_{sha3_256(image.encode()).hexdigest()}.lock"
    )


def run_container(
    image: str,
    request: Optional[ContainerRequest] = None,
    container_runtime: Optional[OciRuntimeBase] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ContainerHandle:
    """Pull ``image``, create and start a container from it as described by
    ``request`` and wait for it to become ready if the request has a
    :py:attr:`~ContainerRequest.waiting_for` strategy.

    Args:
        image: the image to launch
        request: environment, ports, command, credentials and readiness
            strategy of the container
        container_runtime: the runtime to use, defaults to
            :py:func:`~pytest_testcontainer.runtime.get_selected_runtime`
        cancel_event: setting this event aborts waiting for readiness

    Raises:
        EngineConnectionError: no container runtime is available
        PortSpecError: one of the exported ports is invalid, nothing has been
            pulled or created
        EngineOperationError: pulling, creating or starting failed, no
            container is left behind
        ContainerStartupError: the container did not become ready; it is
            still running and has to be terminated via the ``container``
            attribute of the exception

    """
    request = request or ContainerRequest()
    runtime = container_runtime or get_selected_runtime()

    _, port_bindings = parse_port_specs(request.exported_ports)
    _logger.debug(
        "port bindings: %s",
        {str(port): forwards for port, forwards in port_bindings.items()},
    )

    credential = (
        RegistryCredential.parse(request.registry_cred)
        if request.registry_cred
        else None
    )

    # only one process pulls the same image at the same time
    with FileLock(_pull_lock_path(image)):
        if get_always_pull_option() or not runtime.image_exists(image):
            runtime.pull_image(image, credential)

    container_id = runtime.create_container(
        image,
        env=request.env_list,
        port_forwards=[
            forward
            for forwards in port_bindings.values()
            for forward in forwards
        ],
        cmd=request.command,
        name=request.name,
        labels=request.labels,
    )
    _logger.debug("Created container %s from %s", container_id, image)

    try:
        runtime.start_container(container_id)
    except EngineOperationError as start_err:
        # the container was created, don't leak it
        try:
            runtime.remove_container(container_id)
        except TestcontainerError as rm_err:
            _logger.error(
                "Could not remove container %s that failed to start: %s",
                container_id,
                rm_err,
            )
            start_err.cleanup_error = rm_err
        raise

    container = ContainerHandle(container_id, runtime)

    if request.waiting_for is not None:
        _logger.debug(
            "Waiting for container %s via %s", container_id, request.waiting_for
        )
        try:
            request.waiting_for.wait_until_ready(container, cancel_event)
        except Exception as exc:
            raise ContainerStartupError(
                container,
                f"Container {container_id} did not become ready: {exc}",
            ) from exc

    return container
