"""Strategies to wait for a started container to become ready.

A container is *started* once the container runtime launched its main process,
but that process may need an arbitrary amount of time until it listens on its
port, prints that it is up or until its health check succeeds. What *ready*
means depends on the workload, hence any object implementing
:py:class:`ReadinessStrategy` can be passed as
:py:attr:`~pytest_testcontainer.container.ContainerRequest.waiting_for`:

>>> ContainerRequest(
...     exported_ports=["5432"],
...     waiting_for=LogMessageStrategy(
...         "database system is ready to accept connections", occurrences=2
...     ),
... )

All strategies of this module poll their condition every ``poll_interval``
until it holds or until ``startup_timeout``, measured from the call of
``wait_until_ready``, elapsed. Setting the ``cancel_event`` aborts the wait,
also while a probe is blocked in a call to the container runtime.

"""
import concurrent.futures
import dataclasses
import socket
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING
from typing import Callable
from typing import Optional
from typing import Protocol
from typing import Tuple
from typing import TypeVar
from typing import runtime_checkable

import requests

from pytest_testcontainer.errors import EngineTimeoutError
from pytest_testcontainer.errors import ReadinessError
from pytest_testcontainer.errors import ReadinessTimeoutError
from pytest_testcontainer.inspect import ContainerHealth
from pytest_testcontainer.inspect import NetworkProtocol
from pytest_testcontainer.logging import _logger

if TYPE_CHECKING:  # pragma: no cover
    from pytest_testcontainer.container import ContainerHandle

_DEFAULT_STARTUP_TIMEOUT = timedelta(seconds=60)
_DEFAULT_POLL_INTERVAL = timedelta(milliseconds=100)

#: how often a blocked probe checks for the deadline and the cancel event
_ABANDON_CHECK_INTERVAL = 0.05

T = TypeVar("T")


@runtime_checkable
class ReadinessStrategy(Protocol):
    """Interface of all strategies that wait for a container to become
    ready.

    """

    def wait_until_ready(
        self,
        container: "ContainerHandle",
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Block until the container is ready.

        Raises:
            ReadinessTimeoutError: the condition was not observed before the
                strategy's deadline or before ``cancel_event`` was set
            ReadinessError: the container can never become ready

        """


def _call_bounded(
    func: Callable[[timedelta], T],
    deadline: float,
    cancel_event: Optional[threading.Event] = None,
) -> "concurrent.futures.Future[T]":
    """Run ``func`` in a daemon thread and wait for it until the monotonic
    ``deadline`` passed or ``cancel_event`` is set.

    ``func`` receives the time remaining until the deadline. The returned
    future is not done if the call was abandoned, in which case the thread
    keeps running until the engine call returns.

    """
    result: "concurrent.futures.Future[T]" = concurrent.futures.Future()
    remaining = timedelta(seconds=max(0.0, deadline - time.monotonic()))

    def run() -> None:
        try:
            result.set_result(func(remaining))
        # handed over to the waiting caller via result.result()
        except BaseException as exc:  # pylint: disable=broad-except
            result.set_exception(exc)

    threading.Thread(target=run, name="readiness-check", daemon=True).start()

    while not result.done():
        if cancel_event is not None and cancel_event.is_set():
            break
        left = deadline - time.monotonic()
        if left <= 0:
            break
        concurrent.futures.wait(
            [result], timeout=min(left, _ABANDON_CHECK_INTERVAL)
        )
    return result


def poll_until(
    probe: Callable[[timedelta], bool],
    description: str,
    startup_timeout: timedelta,
    poll_interval: timedelta,
    cancel_event: Optional[threading.Event] = None,
    started_at: Optional[float] = None,
) -> None:
    """Call ``probe`` until it returns ``True``.

    The deadline is ``startup_timeout`` after ``started_at`` (a
    :py:func:`time.monotonic` timestamp, defaults to now). ``probe`` receives
    the time remaining until the deadline and should not block for longer
    than that. A probe that is still running at the deadline or when
    ``cancel_event`` is set is abandoned. Between two probes this function
    sleeps for ``poll_interval`` (or the remaining time, if that is shorter)
    and returns early if ``cancel_event`` is set.

    Exceptions raised by ``probe`` are propagated.

    Raises:
        ReadinessTimeoutError: ``startup_timeout`` elapsed or ``cancel_event``
            was set before ``probe`` returned ``True``

    """
    start = time.monotonic() if started_at is None else started_at
    deadline = start + startup_timeout.total_seconds()
    attempts = 0

    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise ReadinessTimeoutError(
                f"Waiting for {description} was cancelled after "
                f"{time.monotonic() - start:.2f}s"
            )

        if deadline - time.monotonic() <= 0:
            raise ReadinessTimeoutError(
                f"{description} did not become ready within "
                f"{startup_timeout.total_seconds()}s ({attempts} attempts)"
            )

        attempts += 1
        verdict = _call_bounded(probe, deadline, cancel_event)
        if verdict.done() and verdict.result():
            _logger.debug(
                "%s is ready after %.2fs",
                description,
                time.monotonic() - start,
            )
            return

        delay = min(
            poll_interval.total_seconds(),
            max(0.0, deadline - time.monotonic()),
        )
        if cancel_event is not None:
            cancel_event.wait(delay)
        else:
            time.sleep(delay)


def _default_port(container: "ContainerHandle") -> int:
    tcp_ports = sorted(
        exposed.port
        for exposed in container.liveness_check_ports()
        if exposed.protocol == NetworkProtocol.TCP
    )
    if not tcp_ports:
        raise ReadinessError(
            f"Container {container.container_id} exposes no TCP port"
        )
    return tcp_ports[0]


def _port_description(port: Optional[int], container_id: str) -> str:
    if port is None:
        return f"the lowest exposed TCP port of container {container_id}"
    return f"port {port} of container {container_id}"


@dataclass(frozen=True)
class ListeningPortStrategy:
    """Wait until a TCP connection to a published port of the container can
    be established.

    Note that :command:`docker` accepts connections on published ports even
    before the process in the container listens, use
    :py:class:`HttpStrategy` or :py:class:`LogMessageStrategy` if that
    matters.

    """

    #: the container port to connect to, defaults to the lowest exposed TCP
    #: port of the container
    port: Optional[int] = None

    #: maximum time to wait
    startup_timeout: timedelta = _DEFAULT_STARTUP_TIMEOUT

    #: time between two connection attempts
    poll_interval: timedelta = _DEFAULT_POLL_INTERVAL

    def wait_until_ready(
        self,
        container: "ContainerHandle",
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        started_at = time.monotonic()
        host = container.container_runtime.host
        host_port: Optional[int] = None

        def probe(remaining: timedelta) -> bool:
            # resolved by the first probe, so that a slow inspection counts
            # towards the deadline
            nonlocal host_port
            if host_port is None:
                host_port = container.mapped_port(
                    self.port
                    if self.port is not None
                    else _default_port(container)
                )
            try:
                with socket.create_connection(
                    (host, host_port), timeout=remaining.total_seconds()
                ):
                    return True
            except OSError as os_err:
                _logger.debug(
                    "Connecting to %s:%d failed: %s", host, host_port, os_err
                )
                return False

        poll_until(
            probe,
            _port_description(self.port, container.container_id),
            self.startup_timeout,
            self.poll_interval,
            cancel_event,
            started_at=started_at,
        )


@dataclass(frozen=True)
class LogMessageStrategy:
    """Wait until the output of the container contains :py:attr:`message` at
    least :py:attr:`occurrences` times.

    """

    #: the string to look for in the container's output
    message: str

    #: how often the message has to appear
    occurrences: int = 1

    #: maximum time to wait
    startup_timeout: timedelta = _DEFAULT_STARTUP_TIMEOUT

    #: time between two reads of the output
    poll_interval: timedelta = _DEFAULT_POLL_INTERVAL

    def __post_init__(self) -> None:
        if not self.message:
            raise ValueError("The log message must not be empty")
        if self.occurrences < 1:
            raise ValueError(
                f"occurrences must be at least 1, got {self.occurrences}"
            )

    def wait_until_ready(
        self,
        container: "ContainerHandle",
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        def probe(remaining: timedelta) -> bool:
            try:
                logs = container.logs(timeout=remaining)
            except EngineTimeoutError as timeout_err:
                _logger.debug("Reading the logs failed: %s", timeout_err)
                return False
            return logs.count(self.message) >= self.occurrences

        poll_until(
            probe,
            f"log message '{self.message}' of container "
            + container.container_id,
            self.startup_timeout,
            self.poll_interval,
            cancel_event,
        )


@dataclass(frozen=True)
class HttpStrategy:
    """Wait until a HTTP ``GET`` request to :py:attr:`path` on a published
    port succeeds.

    """

    #: the path to request
    path: str = "/"

    #: the container port on which the server listens, defaults to the lowest
    #: exposed TCP port of the container
    port: Optional[int] = None

    #: the accepted status codes, any ``2xx`` status is accepted if empty
    status_codes: Tuple[int, ...] = ()

    #: use https instead of http (the certificate is not verified)
    tls: bool = False

    #: maximum time to wait
    startup_timeout: timedelta = _DEFAULT_STARTUP_TIMEOUT

    #: time between two requests
    poll_interval: timedelta = _DEFAULT_POLL_INTERVAL

    def __post_init__(self) -> None:
        if not self.path.startswith("/"):
            raise ValueError(f"The path must be absolute, got {self.path}")

    def _is_accepted(self, status_code: int) -> bool:
        if self.status_codes:
            return status_code in self.status_codes
        return 200 <= status_code < 300

    def _url(self, container: "ContainerHandle") -> str:
        port = self.port if self.port is not None else _default_port(container)
        host = container.container_runtime.host
        if ":" in host:
            host = f"[{host}]"
        return (
            f"{'https' if self.tls else 'http'}://{host}:"
            f"{container.mapped_port(port)}{self.path}"
        )

    def wait_until_ready(
        self,
        container: "ContainerHandle",
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        started_at = time.monotonic()
        url: Optional[str] = None

        def probe(remaining: timedelta) -> bool:
            nonlocal url
            if url is None:
                url = self._url(container)
            try:
                with requests.get(
                    url,
                    timeout=remaining.total_seconds(),
                    verify=False,
                    allow_redirects=False,
                ) as response:
                    _logger.debug("GET %s: %d", url, response.status_code)
                    return self._is_accepted(response.status_code)
            except requests.RequestException as req_err:
                _logger.debug("GET %s failed: %s", url, req_err)
                return False

        poll_until(
            probe,
            f"{self.path} on "
            + _port_description(self.port, container.container_id),
            self.startup_timeout,
            self.poll_interval,
            cancel_event,
            started_at=started_at,
        )


@dataclass(frozen=True)
class HealthCheckStrategy:
    """Wait until the ``HEALTHCHECK`` of the container image reports the
    container as healthy. Containers without a health check are ready
    immediately.

    Unlike the other strategies, this one always inspects the container anew
    instead of using the cached inspection of the handle.

    """

    #: maximum time to wait, inferred from the image's ``HEALTHCHECK`` if
    #: ``None``
    startup_timeout: Optional[timedelta] = None

    #: time between two inspections, defaults to a tenth of the timeout but
    #: at least half a second
    poll_interval: Optional[timedelta] = None

    def _infer_timeout(
        self,
        container: "ContainerHandle",
        started_at: float,
        cancel_event: Optional[threading.Event],
    ) -> timedelta:
        runtime = container.container_runtime
        inspect = _call_bounded(
            lambda remaining: runtime.inspect_container(
                container.container_id, timeout=remaining.total_seconds()
            ),
            started_at + _DEFAULT_STARTUP_TIMEOUT.total_seconds(),
            cancel_event,
        )
        if not inspect.done():
            raise ReadinessTimeoutError(
                "Could not read the health check of container "
                f"{container.container_id} within "
                f"{time.monotonic() - started_at:.2f}s"
            )
        try:
            healthcheck = inspect.result().config.healthcheck
        except EngineTimeoutError as timeout_err:
            raise ReadinessTimeoutError(
                "Could not read the health check of container "
                f"{container.container_id}: {timeout_err}"
            ) from timeout_err

        if healthcheck is None:
            return _DEFAULT_STARTUP_TIMEOUT
        return healthcheck.max_wait_time

    def wait_until_ready(
        self,
        container: "ContainerHandle",
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        started_at = time.monotonic()
        runtime = container.container_runtime
        timeout = self.startup_timeout
        if timeout is None:
            timeout = self._infer_timeout(container, started_at, cancel_event)

        poll_interval = self.poll_interval or max(
            timedelta(seconds=0.5), timeout / 10
        )

        def probe(remaining: timedelta) -> bool:
            try:
                inspect = runtime.inspect_container(
                    container.container_id, timeout=remaining.total_seconds()
                )
            except EngineTimeoutError as timeout_err:
                _logger.debug("Inspecting failed: %s", timeout_err)
                return False
            if not inspect.state.running:
                raise ReadinessError(
                    f"Container {container.container_id} is not running, "
                    f"got {inspect.state.status}"
                )
            _logger.debug(
                "Container has the health status %s", inspect.state.health
            )
            return inspect.state.health in (
                ContainerHealth.NO_HEALTH_CHECK,
                ContainerHealth.HEALTHY,
            )

        poll_until(
            probe,
            f"container {container.container_id}",
            timeout,
            poll_interval,
            cancel_event,
            started_at=started_at,
        )


class AllOf:
    """Wait for several strategies one after another.

    If :py:attr:`startup_timeout` is set, then it bounds the total time and
    strategies that have a ``startup_timeout`` attribute get the remaining
    time if it is shorter than their own.

    """

    def __init__(
        self,
        *strategies: ReadinessStrategy,
        startup_timeout: Optional[timedelta] = None,
    ) -> None:
        #: the strategies to wait for in order
        self.strategies: Tuple[ReadinessStrategy, ...] = strategies
        #: maximum time to wait for all strategies
        self.startup_timeout = startup_timeout

    def __repr__(self) -> str:
        return (
            f"AllOf({', '.join(repr(s) for s in self.strategies)}, "
            f"startup_timeout={self.startup_timeout!r})"
        )

    def wait_until_ready(
        self,
        container: "ContainerHandle",
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        start = time.monotonic()
        for strategy in self.strategies:
            if self.startup_timeout is not None:
                remaining = self.startup_timeout - timedelta(
                    seconds=time.monotonic() - start
                )
                if remaining <= timedelta(0):
                    raise ReadinessTimeoutError(
                        f"Container {container.container_id} did not become "
                        f"ready within {self.startup_timeout.total_seconds()}s"
                    )
                has_timeout = dataclasses.is_dataclass(strategy) and any(
                    fld.name == "startup_timeout"
                    for fld in dataclasses.fields(strategy)
                )
                own_timeout = getattr(strategy, "startup_timeout", None)
                if has_timeout and (
                    own_timeout is None or own_timeout > remaining
                ):
                    strategy = dataclasses.replace(
                        strategy, startup_timeout=remaining  # type: ignore[arg-type]
                    )

            strategy.wait_until_ready(container, cancel_event)
