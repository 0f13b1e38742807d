"""This module contains the container runtime classes abstracting away the
implementation details of container runtimes like :command:`docker` or
:command:`podman`.

An instance of a runtime is the client through which all engine operations
(pull, create, start, inspect, remove) are performed. It is passed explicitly
to :py:func:`~pytest_testcontainer.container.run_container` and held by every
:py:class:`~pytest_testcontainer.container.ContainerHandle`.

"""
import contextlib
import json
import os
import tempfile
from abc import ABC
from abc import abstractmethod
from collections import deque
from os import getenv
from subprocess import CalledProcessError
from subprocess import PIPE
from subprocess import Popen
from subprocess import STDOUT
from subprocess import TimeoutExpired
from subprocess import call
from subprocess import check_output
from typing import Any
from typing import Dict
from typing import Iterator
from typing import List
from typing import Mapping
from typing import Optional
from typing import Set
from typing import Tuple
from urllib.parse import urlparse

import testinfra

from pytest_testcontainer.auth import RegistryCredential
from pytest_testcontainer.errors import EngineConnectionError
from pytest_testcontainer.errors import EngineOperationError
from pytest_testcontainer.errors import EngineTimeoutError
from pytest_testcontainer.inspect import Config
from pytest_testcontainer.inspect import ContainerHealth
from pytest_testcontainer.inspect import ContainerInspect
from pytest_testcontainer.inspect import ContainerNetworkSettings
from pytest_testcontainer.inspect import ContainerState
from pytest_testcontainer.inspect import ExposedPort
from pytest_testcontainer.inspect import HealthCheck
from pytest_testcontainer.inspect import NetworkProtocol
from pytest_testcontainer.inspect import PortForwarding
from pytest_testcontainer.logging import _logger

#: number of trailing lines of the pull output that are kept for error messages
_PULL_OUTPUT_TAIL = 20


class OciRuntimeABC(ABC):
    """The abstract base class defining the interface of a container runtime."""

    def __init__(self, runner_binary: str) -> None:
        #: the "main" binary of this runtime, e.g. podman or docker
        self._runner_binary: str = runner_binary

    @property
    def runner_binary(self) -> str:
        """The "main" binary of this runtime, e.g. podman or docker."""
        return self._runner_binary

    def get_container_health(self, container_id: str) -> ContainerHealth:
        """Inspects the running container with the supplied id and returns its current
        health.

        """
        return self.inspect_container(container_id).state.health

    @abstractmethod
    def inspect_container(
        self, container_id: str, timeout: Optional[float] = None
    ) -> ContainerInspect:
        """Inspect the container with the provided ``container_id`` and return
        the parsed output from the container runtime as an instance of
        :py:class:`~pytest_testcontainer.inspect.ContainerInspect`.

        ``timeout`` bounds the runtime call in seconds, exceeding it raises
        :py:class:`~pytest_testcontainer.errors.EngineTimeoutError`.

        """

    @abstractmethod
    def _pull_command(
        self, image: str, credential: Optional[RegistryCredential]
    ) -> "contextlib.AbstractContextManager[Tuple[List[str], Optional[Dict[str, str]]]]":
        """Context manager yielding the command and the environment with
        which ``image`` is pulled using the optional ``credential``.

        """


class OciRuntimeBase(OciRuntimeABC):
    """Base class of the Container Runtimes."""

    @property
    def host(self) -> str:
        """The host on which published container ports are reachable.

        This is ``localhost``, unless the runtime is talking to a remote
        daemon via ``DOCKER_HOST`` or ``CONTAINER_HOST``.

        """
        for env_var in ("DOCKER_HOST", "CONTAINER_HOST"):
            remote = urlparse(getenv(env_var, ""))
            if remote.scheme in ("tcp", "ssh", "http", "https"):
                if remote.hostname:
                    return remote.hostname
        return "localhost"

    def run_command(self, *args: str, timeout: Optional[float] = None) -> str:
        """Run :command:`$runner_binary $args` and return its standard output.

        Raises:
            EngineOperationError: the command exited with a non-zero code
            EngineTimeoutError: the command did not finish within ``timeout``
                seconds
            EngineConnectionError: the runtime binary cannot be executed

        """
        cmd = [self.runner_binary, *args]
        _logger.debug("Running %s", cmd)
        try:
            return check_output(cmd, stderr=PIPE, timeout=timeout).decode()
        except TimeoutExpired as timeout_err:
            raise EngineTimeoutError(
                cmd, message=f"{' '.join(cmd)} timed out after {timeout}s"
            ) from timeout_err
        except CalledProcessError as cp_err:
            raise EngineOperationError(
                cmd,
                returncode=cp_err.returncode,
                stderr=(cp_err.stderr or b"").decode(errors="replace"),
            ) from cp_err
        except OSError as os_err:
            raise EngineConnectionError(
                f"Could not execute {self.runner_binary}: {os_err}"
            ) from os_err

    def image_exists(self, image: str) -> bool:
        """Returns whether ``image`` is already present in the local image
        storage.

        """
        return (
            call(
                [self.runner_binary, "image", "inspect", image],
                stdout=PIPE,
                stderr=PIPE,
            )
            == 0
        )

    def pull_image(
        self, image: str, credential: Optional[RegistryCredential] = None
    ) -> None:
        """Pull ``image`` and block until the pull finished.

        The output of the pull is read until the pull process closes it, every
        line is logged. The exit code of the pull is authoritative: a pull
        that reports warnings but exits with ``0`` is considered successful,
        the warnings are logged. A non-zero exit code raises an
        :py:class:`~pytest_testcontainer.errors.EngineOperationError`.

        """
        with self._pull_command(image, credential) as (cmd, env):
            _logger.debug("Pulling %s via %s", image, self.runner_binary)
            tail: "deque[str]" = deque(maxlen=_PULL_OUTPUT_TAIL)
            try:
                proc = Popen(cmd, stdout=PIPE, stderr=STDOUT, env=env)
            except OSError as os_err:
                raise EngineConnectionError(
                    f"Could not execute {self.runner_binary}: {os_err}"
                ) from os_err

            with proc:
                assert proc.stdout is not None
                for raw_line in proc.stdout:
                    line = raw_line.decode(errors="replace").rstrip()
                    if not line:
                        continue
                    tail.append(line)
                    if "warning" in line.lower():
                        _logger.warning("pull of %s: %s", image, line)
                    else:
                        _logger.debug("pull of %s: %s", image, line)

            if proc.returncode != 0:
                raise EngineOperationError(
                    [
                        "***"
                        if credential is not None and arg == credential.creds
                        else arg
                        for arg in cmd
                    ],
                    returncode=proc.returncode,
                    stderr="\n".join(tail),
                )

    def create_container(
        self,
        image: str,
        env: List[str],
        port_forwards: List[PortForwarding],
        cmd: Optional[List[str]] = None,
        name: str = "",
        labels: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Create (but do not start) a container from ``image`` and return its
        id.

        Args:
            env: environment variables in the form ``KEY=VALUE``
            port_forwards: ports to publish
            cmd: command overriding the image's ``CMD``, ``None`` keeps the
                image default
            name: optional name of the container
            labels: optional labels of the container

        """
        args = ["create"]
        for env_var in env:
            args.extend(("-e", env_var))
        for forward in port_forwards:
            args.extend(forward.forward_cli_args)
        for key, value in (labels or {}).items():
            args.extend(("--label", f"{key}={value}"))
        if name:
            args.extend(("--name", name))
        args.append(image)
        args.extend(cmd or [])

        # podman prints warnings before the id on stdout in some versions
        return self.run_command(*args).strip().splitlines()[-1]

    def start_container(self, container_id: str) -> None:
        """Start the already created container ``container_id``."""
        self.run_command("start", container_id)

    def remove_container(self, container_id: str) -> None:
        """Forcibly remove the container ``container_id``, stopping it if
        necessary.

        """
        _logger.debug(
            "Removing container %s via %s", container_id, self.runner_binary
        )
        self.run_command("rm", "-f", container_id)

    def get_container_logs(
        self, container_id: str, timeout: Optional[float] = None
    ) -> str:
        """Returns the logs (stdout and stderr) of the container."""
        cmd = [self.runner_binary, "logs", container_id]
        try:
            return check_output(cmd, stderr=STDOUT, timeout=timeout).decode(
                errors="replace"
            )
        except TimeoutExpired as timeout_err:
            raise EngineTimeoutError(
                cmd, message=f"{' '.join(cmd)} timed out after {timeout}s"
            ) from timeout_err
        except CalledProcessError as cp_err:
            raise EngineOperationError(
                cmd,
                returncode=cp_err.returncode,
                stderr=(cp_err.output or b"").decode(errors="replace"),
            ) from cp_err

    def _get_container_inspect(
        self, container_id: str, timeout: Optional[float] = None
    ) -> Any:
        inspect = json.loads(
            self.run_command("inspect", container_id, timeout=timeout)
        )
        if len(inspect) != 1:
            raise EngineOperationError(
                [self.runner_binary, "inspect", container_id],
                message=f"Got {len(inspect)} results back, "
                f"but expected exactly one container to match {container_id}",
            )

        return inspect[0]

    @staticmethod
    def _state_from_inspect(container_inspect: Any) -> ContainerState:
        State = container_inspect["State"]
        return ContainerState(
            status=State["Status"],
            running=State["Running"],
            restarting=State.get("Restarting", False),
            dead=State.get("Dead", False),
            exit_code=State.get("ExitCode", 0),
            # depending on the podman version, this property is called either
            # Health or Healthcheck
            health=ContainerHealth(
                (State.get("Health") or State.get("Healthcheck") or {}).get(
                    "Status", ""
                )
            ),
        )

    @staticmethod
    def _config_from_inspect(container_inspect: Any) -> Config:
        config = container_inspect["Config"]

        env: Dict[str, str] = {}
        for env_var in config.get("Env") or []:
            key, _, value = env_var.partition("=")
            env[key] = value

        healthcheck = None
        if config.get("Healthcheck"):
            healthcheck = HealthCheck.from_container_inspect(
                config["Healthcheck"]
            )

        exposed_ports: Set[ExposedPort] = {
            ExposedPort.parse(port)
            for port in (config.get("ExposedPorts") or {})
        }
        # podman does not always report the published ports in the config
        ports = container_inspect.get("NetworkSettings", {}).get("Ports")
        if isinstance(ports, dict):
            exposed_ports.update(ExposedPort.parse(port) for port in ports)

        return Config(
            image=config["Image"],
            cmd=config.get("Cmd") or [],
            env=env,
            labels=config.get("Labels") or {},
            exposed_ports=frozenset(exposed_ports),
            healthcheck=healthcheck,
        )

    @staticmethod
    def _network_settings_from_inspect(
        container_inspect: Any,
    ) -> ContainerNetworkSettings:
        net_settings = container_inspect.get("NetworkSettings") or {}
        ports: List[PortForwarding] = []

        # NetworkSettings.Ports carries the host ports that were actually
        # assigned, but it changed its structure between podman 1 and 4 from a
        # list into a dictionary. HostConfig.PortBindings is only used as a
        # fallback, as it contains no host port for randomly assigned ports.
        raw_ports = net_settings.get("Ports")
        if isinstance(raw_ports, dict):
            for container_port, bindings in raw_ports.items():
                exposed = ExposedPort.parse(container_port)
                for binding in bindings or []:
                    ports.append(
                        PortForwarding(
                            container_port=exposed.port,
                            protocol=exposed.protocol,
                            host_port=int(binding["HostPort"]),
                            bind_ip=binding.get("HostIp", ""),
                        )
                    )
        elif isinstance(raw_ports, list):
            for binding in raw_ports:
                ports.append(
                    PortForwarding(
                        container_port=int(binding["containerPort"]),
                        protocol=NetworkProtocol(
                            binding.get("protocol", "tcp").lower()
                        ),
                        host_port=int(binding["hostPort"]),
                        bind_ip=binding.get("hostIP", ""),
                    )
                )

        if not ports:
            host_config = container_inspect.get("HostConfig") or {}
            for container_port, bindings in (
                host_config.get("PortBindings") or {}
            ).items():
                exposed = ExposedPort.parse(container_port)
                for binding in bindings or []:
                    if not binding.get("HostPort"):
                        continue
                    ports.append(
                        PortForwarding(
                            container_port=exposed.port,
                            protocol=exposed.protocol,
                            host_port=int(binding["HostPort"]),
                            bind_ip=binding.get("HostIp", ""),
                        )
                    )

        ip = net_settings.get("IPAddress") or None
        if ip is None:
            for network in (net_settings.get("Networks") or {}).values():
                if network.get("IPAddress"):
                    ip = network["IPAddress"]
                    break

        return ContainerNetworkSettings(ports=ports, ip_address=ip)

    def _inspect_from_json(
        self, container_inspect: Any, name: str
    ) -> ContainerInspect:
        return ContainerInspect(
            id=container_inspect["Id"],
            name=name,
            state=self._state_from_inspect(container_inspect),
            image_hash=container_inspect["Image"],
            config=self._config_from_inspect(container_inspect),
            network=self._network_settings_from_inspect(container_inspect),
        )

    def __str__(self) -> str:
        return self.__class__.__name__

    def __eq__(self, other: Any) -> bool:
        return (
            isinstance(other, OciRuntimeBase)
            and type(self) is type(other)
            and self.runner_binary == other.runner_binary
        )

    def __hash__(self) -> int:
        return hash((type(self), self.runner_binary))


def _docker_config_dir() -> str:
    return getenv("DOCKER_CONFIG") or os.path.join(
        os.path.expanduser("~"), ".docker"
    )


def _load_docker_config(config_dir: str) -> Dict[str, Any]:
    try:
        with open(
            os.path.join(config_dir, "config.json"), encoding="utf-8"
        ) as config_json:
            config = json.load(config_json)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as err:
        _logger.warning("Ignoring unreadable docker config: %s", err)
        return {}
    return config if isinstance(config, dict) else {}


def _merge_docker_config(
    config: Dict[str, Any], credential_config: Dict[str, Any]
) -> Dict[str, Any]:
    """Add the ``auths`` of ``credential_config`` to the docker ``config``,
    keeping its contexts, proxies and the helpers of other registries.

    """
    merged = dict(config)
    auths = dict(merged.get("auths") or {})
    auths.update(credential_config["auths"])
    merged["auths"] = auths

    # credential helpers take precedence over the auths entries
    merged.pop("credsStore", None)
    cred_helpers = {
        registry: helper
        for registry, helper in (merged.get("credHelpers") or {}).items()
        if registry not in credential_config["auths"]
    }
    if cred_helpers:
        merged["credHelpers"] = cred_helpers
    else:
        merged.pop("credHelpers", None)
    return merged


LOCALHOST = testinfra.host.get_host("local://")


class PodmanRuntime(OciRuntimeBase):
    """The container runtime using :command:`podman` for running containers."""

    def __init__(self) -> None:
        podman_ps = LOCALHOST.run("podman ps")
        if not podman_ps.succeeded:
            raise EngineConnectionError(
                f"`podman ps` failed with {podman_ps.stderr}"
            )

        super().__init__(runner_binary="podman")

    @contextlib.contextmanager
    def _pull_command(
        self, image: str, credential: Optional[RegistryCredential]
    ) -> Iterator[Tuple[List[str], Optional[Dict[str, str]]]]:
        cmd = [self.runner_binary, "pull"]
        if credential is not None:
            cmd.extend(("--creds", credential.creds))
        cmd.append(image)
        yield cmd, None

    def inspect_container(
        self, container_id: str, timeout: Optional[float] = None
    ) -> ContainerInspect:
        inspect = self._get_container_inspect(container_id, timeout=timeout)
        return self._inspect_from_json(inspect, name=inspect["Name"])


class DockerRuntime(OciRuntimeBase):
    """The container runtime using :command:`docker` for running containers."""

    def __init__(self) -> None:
        docker_ps = LOCALHOST.run("docker ps")
        if not docker_ps.succeeded:
            raise EngineConnectionError(
                f"`docker ps` failed with {docker_ps.stderr}"
            )

        super().__init__(runner_binary="docker")

    @contextlib.contextmanager
    def _pull_command(
        self, image: str, credential: Optional[RegistryCredential]
    ) -> Iterator[Tuple[List[str], Optional[Dict[str, str]]]]:
        cmd = [self.runner_binary, "pull", image]
        if credential is None:
            yield cmd, None
            return

        # docker pull has no flag for credentials, hence we point it to a
        # throw-away config directory with a copy of the user's config plus
        # the credentials
        user_config_dir = _docker_config_dir()
        with tempfile.TemporaryDirectory() as config_dir:
            with open(
                os.path.join(config_dir, "config.json"), "w", encoding="utf-8"
            ) as config_json:
                json.dump(
                    _merge_docker_config(
                        _load_docker_config(user_config_dir),
                        credential.docker_config(image),
                    ),
                    config_json,
                )
            # the current context is only resolvable with its metadata
            contexts = os.path.join(user_config_dir, "contexts")
            if os.path.isdir(contexts):
                os.symlink(contexts, os.path.join(config_dir, "contexts"))
            yield cmd, {**os.environ, "DOCKER_CONFIG": config_dir}

    def inspect_container(
        self, container_id: str, timeout: Optional[float] = None
    ) -> ContainerInspect:
        inspect = self._get_container_inspect(container_id, timeout=timeout)
        # docker prefixes the name with a / for reasons…
        return self._inspect_from_json(
            inspect, name=inspect["Name"].lstrip("/")
        )


def get_selected_runtime() -> OciRuntimeBase:
    """Returns the container runtime that the user selected.

    It defaults to podman and selects docker if the environment variable
    ``CONTAINER_RUNTIME`` is set to ``docker``.

    Raises:
        ValueError: ``CONTAINER_RUNTIME`` is neither podman nor docker
        EngineConnectionError: the selected runtime is not installed or
            does not respond

    """
    podman_exists = LOCALHOST.exists("podman")
    docker_exists = LOCALHOST.exists("docker")

    runtime_choice = getenv("CONTAINER_RUNTIME", "podman").lower()
    if runtime_choice not in ("podman", "docker"):
        raise ValueError(f"Invalid CONTAINER_RUNTIME {runtime_choice}")

    if runtime_choice == "podman" and podman_exists:
        return PodmanRuntime()
    if runtime_choice == "docker" and docker_exists:
        return DockerRuntime()

    raise EngineConnectionError(
        "Selected runtime " + runtime_choice + " does not exist on the system"
    )
