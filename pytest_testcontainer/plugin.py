"""The plugin module contains all fixtures and hooks that are provided by
``pytest_testcontainer``.

"""
import threading
from typing import Callable
from typing import Generator
from typing import List
from typing import Optional

from _pytest.config import Config
from _pytest.config.argparsing import Parser
from pytest import fixture

from pytest_testcontainer.container import ContainerHandle
from pytest_testcontainer.container import ContainerRequest
from pytest_testcontainer.container import run_container
from pytest_testcontainer.errors import ContainerStartupError
from pytest_testcontainer.errors import TestcontainerError
from pytest_testcontainer.helpers import add_logging_level_options
from pytest_testcontainer.helpers import set_logging_level_from_cli_args
from pytest_testcontainer.logging import _logger
from pytest_testcontainer.runtime import OciRuntimeBase
from pytest_testcontainer.runtime import get_selected_runtime

#: Signature of the callable returned by the :py:func:`container_factory`
#: fixture
ContainerFactory = Callable[..., ContainerHandle]


def pytest_addoption(parser: Parser) -> None:
    add_logging_level_options(parser)


def pytest_configure(config: Config) -> None:
    set_logging_level_from_cli_args(config)


@fixture(scope="session")
def container_runtime() -> OciRuntimeBase:
    """pytest fixture that returns the currently selected container runtime,
    see :py:func:`~pytest_testcontainer.runtime.get_selected_runtime`.

    """
    return get_selected_runtime()


def _log_container_logs(container: ContainerHandle) -> None:
    # don't die if logging fails for some reason
    try:
        logs = container.logs()
    except TestcontainerError as exc:
        _logger.debug(
            "could not retrieve logs of %s: %s", container.container_id, exc
        )
        return
    _logger.debug("logs from container %s: %s", container.container_id, logs)


@fixture
def container_factory(
    # we must call this parameter container runtime, so that pytest will
    # treat it as a fixture, but that causes pylint to complain…
    # pylint: disable=redefined-outer-name
    container_runtime: OciRuntimeBase,
) -> Generator[ContainerFactory, None, None]:
    """Fixture returning a function with the signature of
    :py:func:`~pytest_testcontainer.container.run_container` (without the
    ``container_runtime`` parameter) that launches containers via
    :py:func:`container_runtime`.

    All containers launched via the function are terminated after the test,
    including those that did not become ready. Their logs are written to the
    debug log before.

    """
    launched: List[ContainerHandle] = []

    def launch(
        image: str,
        request: Optional[ContainerRequest] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ContainerHandle:
        try:
            container = run_container(
                image,
                request,
                container_runtime=container_runtime,
                cancel_event=cancel_event,
            )
        except ContainerStartupError as startup_err:
            launched.append(startup_err.container)
            raise
        launched.append(container)
        return container

    yield launch

    errors = []
    for container in reversed(launched):
        if container.terminated:
            continue
        _log_container_logs(container)
        try:
            container.terminate()
        except TestcontainerError as exc:
            errors.append(exc)

    if errors:
        raise errors[0]
