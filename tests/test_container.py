# pylint: disable=missing-function-docstring,missing-module-docstring
import threading
import time
from typing import List
from typing import Optional
from typing import Union

import pytest

from pytest_testcontainer.auth import RegistryCredential
from pytest_testcontainer.container import ContainerHandle
from pytest_testcontainer.container import ContainerRequest
from pytest_testcontainer.container import run_container
from pytest_testcontainer.errors import ContainerStartupError
from pytest_testcontainer.errors import EngineOperationError
from pytest_testcontainer.errors import MappedPortNotFoundError
from pytest_testcontainer.errors import PortSpecError
from pytest_testcontainer.errors import RequestValidationError
from pytest_testcontainer.errors import TestcontainerError
from pytest_testcontainer.inspect import ContainerInspect
from pytest_testcontainer.inspect import ExposedPort
from pytest_testcontainer.inspect import PortForwarding

from .fakes import CONTAINER_ID
from .fakes import UDP_53
from .fakes import FailingStrategy
from .fakes import FakeRuntime
from .fakes import RecordingStrategy
from .fakes import make_inspect

IMAGE = "registry.example.com/app:latest"


def test_run_container_end_to_end(fake_runtime: FakeRuntime) -> None:
    fake_runtime.inspect_result = make_inspect(ports={80: 8080})
    container = run_container(
        IMAGE,
        ContainerRequest(env={"FOO": "bar"}, exported_ports=["8080:80"]),
        container_runtime=fake_runtime,
    )

    assert container.container_id == CONTAINER_ID
    assert container.mapped_port(80) == 8080
    assert fake_runtime.operations() == ["pull", "create", "start", "inspect"]
    (created,) = fake_runtime.created
    assert created["image"] == IMAGE
    assert created["env"] == ["FOO=bar"]
    assert created["port_forwards"] == [
        PortForwarding(container_port=80, host_port=8080)
    ]
    assert created["cmd"] is None


@pytest.mark.parametrize(
    "cmd, expected",
    [
        ("", None),
        ("sleep 600", ["sleep", "600"]),
        ("  postgres   -c  fsync=off ", ["postgres", "-c", "fsync=off"]),
    ],
)
def test_command_is_split_on_whitespace(
    cmd: str, expected: Optional[List[str]], fake_runtime: FakeRuntime
) -> None:
    run_container(
        IMAGE, ContainerRequest(cmd=cmd), container_runtime=fake_runtime
    )

    assert fake_runtime.created[0]["cmd"] == expected


def test_name_and_labels_are_passed_to_the_runtime(
    fake_runtime: FakeRuntime,
) -> None:
    run_container(
        IMAGE,
        ContainerRequest(name="db", labels={"org.example.test": "1"}),
        container_runtime=fake_runtime,
    )

    assert fake_runtime.created[0]["name"] == "db"
    assert fake_runtime.created[0]["labels"] == {"org.example.test": "1"}


def test_invalid_port_spec_fails_before_any_engine_call(
    fake_runtime: FakeRuntime,
) -> None:
    with pytest.raises(PortSpecError) as spec_err_ctx:
        run_container(
            IMAGE,
            ContainerRequest(exported_ports=["80", "http"]),
            container_runtime=fake_runtime,
        )

    assert spec_err_ctx.value.spec == "http"
    assert not fake_runtime.calls


def test_invalid_registry_credential_fails_before_any_engine_call(
    fake_runtime: FakeRuntime,
) -> None:
    with pytest.raises(RequestValidationError):
        run_container(
            IMAGE,
            ContainerRequest(registry_cred="no-separator"),
            container_runtime=fake_runtime,
        )

    assert not fake_runtime.calls


def test_registry_credential_is_used_for_the_pull(
    fake_runtime: FakeRuntime,
) -> None:
    run_container(
        IMAGE,
        ContainerRequest(registry_cred="jane:secret"),
        container_runtime=fake_runtime,
    )

    assert fake_runtime.calls[0] == (
        "pull",
        IMAGE,
        RegistryCredential("jane", "secret"),
    )


@pytest.mark.parametrize(
    "pull_always, local_images, pulled",
    [
        ("1", [IMAGE], True),
        ("0", [IMAGE], False),
        ("0", [], True),
    ],
)
def test_pull_always_option(
    pull_always: str,
    local_images: List[str],
    pulled: bool,
    fake_runtime: FakeRuntime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PULL_ALWAYS", pull_always)
    fake_runtime.local_images = local_images

    run_container(IMAGE, container_runtime=fake_runtime)

    assert ("pull" in fake_runtime.operations()) == pulled


def test_failed_pull_creates_nothing(fake_runtime: FakeRuntime) -> None:
    fake_runtime.failures["pull"] = EngineOperationError(
        ["fake", "pull", IMAGE], returncode=125, stderr="manifest unknown"
    )
    with pytest.raises(EngineOperationError):
        run_container(IMAGE, container_runtime=fake_runtime)

    assert fake_runtime.operations() == ["pull"]


def test_failed_start_removes_the_container(fake_runtime: FakeRuntime) -> None:
    fake_runtime.failures["start"] = EngineOperationError(
        ["fake", "start", CONTAINER_ID], returncode=126
    )
    with pytest.raises(EngineOperationError) as op_err_ctx:
        run_container(IMAGE, container_runtime=fake_runtime)

    assert fake_runtime.operations() == ["pull", "create", "start", "remove"]
    assert op_err_ctx.value.returncode == 126
    assert op_err_ctx.value.cleanup_error is None


def test_failed_cleanup_after_failed_start_is_reported(
    fake_runtime: FakeRuntime,
) -> None:
    rm_err = EngineOperationError(["fake", "rm", "-f", CONTAINER_ID], 1)
    fake_runtime.failures["start"] = EngineOperationError(
        ["fake", "start", CONTAINER_ID], returncode=126
    )
    fake_runtime.failures["remove"] = rm_err

    with pytest.raises(EngineOperationError) as op_err_ctx:
        run_container(IMAGE, container_runtime=fake_runtime)

    assert op_err_ctx.value.returncode == 126
    assert op_err_ctx.value.cleanup_error is rm_err


def test_readiness_strategy_receives_the_started_container(
    fake_runtime: FakeRuntime,
) -> None:
    strategy = RecordingStrategy()
    container = run_container(
        IMAGE,
        ContainerRequest(waiting_for=strategy),
        container_runtime=fake_runtime,
    )

    assert strategy.containers == [container]
    assert "remove" not in fake_runtime.operations()


def test_failed_readiness_returns_the_container(
    fake_runtime: FakeRuntime,
) -> None:
    strategy = FailingStrategy()
    with pytest.raises(ContainerStartupError) as startup_err_ctx:
        run_container(
            IMAGE,
            ContainerRequest(waiting_for=strategy),
            container_runtime=fake_runtime,
        )

    assert strategy.calls == 1
    assert startup_err_ctx.value.__cause__ is strategy.error
    assert "never ready" in str(startup_err_ctx.value)

    container = startup_err_ctx.value.container
    assert container.container_id == CONTAINER_ID
    # the container is left running for the caller
    assert "remove" not in fake_runtime.operations()

    container.terminate()
    assert fake_runtime.operations()[-1] == "remove"
    assert container.terminated


def test_cancel_event_is_handed_to_the_strategy(
    fake_runtime: FakeRuntime,
) -> None:
    cancel_event = threading.Event()
    received: List[Optional[threading.Event]] = []

    class Strategy:
        def wait_until_ready(
            self,
            container: ContainerHandle,
            cancel_event: Optional[threading.Event] = None,
        ) -> None:
            received.append(cancel_event)

    run_container(
        IMAGE,
        ContainerRequest(waiting_for=Strategy()),
        container_runtime=fake_runtime,
        cancel_event=cancel_event,
    )

    assert received == [cancel_event]


@pytest.mark.parametrize("key", ["", "FOO=BAR"])
def test_invalid_environment_variable_names(key: str) -> None:
    with pytest.raises(RequestValidationError) as val_err_ctx:
        ContainerRequest(env={key: "baz"})

    assert isinstance(val_err_ctx.value, TestcontainerError)
    assert isinstance(val_err_ctx.value, ValueError)


def test_handle_requires_container_id(fake_runtime: FakeRuntime) -> None:
    with pytest.raises(ValueError):
        ContainerHandle("", fake_runtime)


def test_inspection_is_cached(fake_runtime: FakeRuntime) -> None:
    fake_runtime.inspect_result = make_inspect(ports={80: 8080, 53: 5353})
    container = ContainerHandle(CONTAINER_ID, fake_runtime)

    assert container.mapped_port(80) == 8080
    assert container.mapped_port(80) == 8080

    fake_runtime.inspect_result = make_inspect(ports={80: 9090})
    assert container.mapped_port(80) == 8080
    assert container.mapped_port(53) == 5353
    assert container.ip_address() == "172.17.0.2"
    assert fake_runtime.inspect_calls == 1


def test_refresh_inspects_again(fake_runtime: FakeRuntime) -> None:
    fake_runtime.inspect_result = make_inspect(ports={80: 8080})
    container = ContainerHandle(CONTAINER_ID, fake_runtime)
    assert container.mapped_port(80) == 8080

    fake_runtime.inspect_result = make_inspect(ports={80: 9090})
    container.refresh()

    assert container.mapped_port(80) == 9090
    assert fake_runtime.inspect_calls == 2


def test_refresh_during_inspection_discards_its_result(
    fake_runtime: FakeRuntime,
) -> None:
    before = make_inspect(ports={80: 8080})
    after = make_inspect(ports={80: 9090})
    fake_runtime.inspect_sequence = [before, after]
    fake_runtime.inspect_gate.clear()
    container = ContainerHandle(CONTAINER_ID, fake_runtime)

    results: List[ContainerInspect] = []
    thread = threading.Thread(
        target=lambda: results.append(container.inspect)
    )
    thread.start()

    # let the thread block in the runtime's inspect
    time.sleep(0.2)
    container.refresh()
    fake_runtime.inspect_gate.set()
    thread.join(timeout=5)

    assert results == [before]
    assert container.inspect is after
    assert container.mapped_port(80) == 9090
    assert fake_runtime.inspect_calls == 2


def test_port_not_found_is_reported_every_time(
    fake_runtime: FakeRuntime,
) -> None:
    fake_runtime.inspect_result = make_inspect(ports={80: 8080})
    container = ContainerHandle(CONTAINER_ID, fake_runtime)

    for _ in range(2):
        with pytest.raises(MappedPortNotFoundError) as not_found_ctx:
            container.mapped_port(443)
        assert not_found_ctx.value.port == 443
        assert "Unable to find mapped port: 443" in str(not_found_ctx.value)

    assert fake_runtime.inspect_calls == 1


def test_failed_inspection_is_not_cached(fake_runtime: FakeRuntime) -> None:
    fake_runtime.failures["inspect"] = EngineOperationError(
        ["fake", "inspect", CONTAINER_ID], 1, stderr="no such container"
    )
    container = ContainerHandle(CONTAINER_ID, fake_runtime)

    with pytest.raises(EngineOperationError):
        container.mapped_port(80)

    del fake_runtime.failures["inspect"]
    fake_runtime.inspect_result = make_inspect(ports={80: 8080})

    assert container.mapped_port(80) == 8080
    assert fake_runtime.inspect_calls == 2


@pytest.mark.parametrize("fail", [False, True])
def test_concurrent_accessors_share_one_inspection(
    fail: bool, fake_runtime: FakeRuntime
) -> None:
    if fail:
        fake_runtime.failures["inspect"] = EngineOperationError(
            ["fake", "inspect", CONTAINER_ID], 1
        )
    fake_runtime.inspect_result = make_inspect(ports={80: 8080})
    fake_runtime.inspect_gate.clear()
    container = ContainerHandle(CONTAINER_ID, fake_runtime)

    results: List[Union[ContainerInspect, BaseException]] = []
    results_lock = threading.Lock()

    def access() -> None:
        try:
            res: Union[ContainerInspect, BaseException] = container.inspect
        except EngineOperationError as err:
            res = err
        with results_lock:
            results.append(res)

    threads = [threading.Thread(target=access) for _ in range(8)]
    for thread in threads:
        thread.start()

    # give all threads the chance to block on the pending inspection
    time.sleep(0.2)
    fake_runtime.inspect_gate.set()
    for thread in threads:
        thread.join(timeout=5)

    assert len(results) == 8
    assert fake_runtime.inspect_calls == 1
    assert all(res is results[0] for res in results)
    if fail:
        assert results[0] is fake_runtime.failures["inspect"]
    else:
        assert results[0] is fake_runtime.inspect_result


def test_liveness_check_ports(fake_runtime: FakeRuntime) -> None:
    fake_runtime.inspect_result = make_inspect(
        ports={80: 8080}, exposed=frozenset((ExposedPort(80), UDP_53))
    )
    container = ContainerHandle(CONTAINER_ID, fake_runtime)

    assert container.liveness_check_ports() == frozenset(
        (ExposedPort(80), UDP_53)
    )


def test_ip_address_without_network(fake_runtime: FakeRuntime) -> None:
    fake_runtime.inspect_result = make_inspect(ip_address=None)
    assert ContainerHandle(CONTAINER_ID, fake_runtime).ip_address() == ""


def test_terminate_twice_fails(fake_runtime: FakeRuntime) -> None:
    container = ContainerHandle(CONTAINER_ID, fake_runtime)
    container.terminate()
    assert container.terminated

    fake_runtime.failures["remove"] = EngineOperationError(
        ["fake", "rm", "-f", CONTAINER_ID], 1, stderr="no such container"
    )
    with pytest.raises(EngineOperationError):
        container.terminate()


def test_handle_as_context_manager(fake_runtime: FakeRuntime) -> None:
    with ContainerHandle(CONTAINER_ID, fake_runtime) as container:
        assert not container.terminated

    assert container.terminated
    assert fake_runtime.calls == [("remove", CONTAINER_ID)]


def test_logs(fake_runtime: FakeRuntime) -> None:
    fake_runtime.logs_output = "ready to accept connections\n"
    container = ContainerHandle(CONTAINER_ID, fake_runtime)

    assert container.logs() == "ready to accept connections\n"
