"""Exceptions raised by :py:mod:`pytest_testcontainer`.

Every exception derives from :py:class:`TestcontainerError` and additionally
from the builtin exception that describes its kind, so that callers can catch
either the library specific class or e.g. a plain :py:class:`ValueError`.

"""
from typing import TYPE_CHECKING
from typing import Optional
from typing import Sequence

if TYPE_CHECKING:  # pragma: no cover
    from pytest_testcontainer.container import ContainerHandle


class TestcontainerError(Exception):
    """Base class of all errors raised by this library."""

    # prevent pytest from trying to collect this class
    __test__ = False


class EngineConnectionError(TestcontainerError, RuntimeError):
    """The container runtime cannot be found or does not respond."""


class RequestValidationError(TestcontainerError, ValueError):
    """A field of a container request or a registry credential is invalid."""


class PortSpecError(RequestValidationError):
    """A port export specification could not be parsed."""

    def __init__(self, spec: str, reason: str) -> None:
        super().__init__(f"Invalid port specification '{spec}': {reason}")
        #: the offending specification
        self.spec = spec


class EngineOperationError(TestcontainerError, RuntimeError):
    """A call to the container runtime (pull, create, start, inspect, remove,
    logs) failed.

    """

    def __init__(
        self,
        cmd: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        message: str = "",
    ) -> None:
        super().__init__(
            message
            or f"Command {' '.join(cmd)} failed with exit code {returncode}: "
            + stderr.strip()
        )
        #: the command that failed
        self.cmd = list(cmd)
        #: exit code of the command, if it ran at all
        self.returncode = returncode
        #: standard error output of the command
        self.stderr = stderr
        #: set when cleaning up after this error failed as well
        self.cleanup_error: Optional[Exception] = None


class EngineTimeoutError(EngineOperationError, TimeoutError):
    """A call to the container runtime did not finish in time."""


class MappedPortNotFoundError(TestcontainerError, LookupError):
    """The container has no host binding for the requested port."""

    def __init__(self, port: int) -> None:
        super().__init__(f"Unable to find mapped port: {port}")
        #: the container port that was requested
        self.port = port


class ReadinessError(TestcontainerError, RuntimeError):
    """The readiness condition of a container can not be satisfied."""


class ReadinessTimeoutError(ReadinessError, TimeoutError):
    """The readiness condition was not observed before the deadline passed or
    the wait was cancelled.

    """


class ContainerStartupError(TestcontainerError, RuntimeError):
    """The container was started, but did not become ready.

    The container is still running and must be removed via
    :py:attr:`container`.

    """

    def __init__(self, container: "ContainerHandle", message: str) -> None:
        super().__init__(message)
        #: handle to the started container, use it to terminate the container
        self.container = container
