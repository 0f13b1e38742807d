# pylint: disable=missing-function-docstring,missing-module-docstring
# pylint: disable=redefined-outer-name
import logging
from typing import Iterator
from typing import Optional

import pytest

from pytest_testcontainer.container import ContainerRequest
from pytest_testcontainer.errors import ContainerStartupError
from pytest_testcontainer.helpers import get_always_pull_option
from pytest_testcontainer.helpers import set_logging_level_from_cli_args
from pytest_testcontainer.logging import _logger
from pytest_testcontainer.plugin import ContainerFactory
from pytest_testcontainer.runtime import OciRuntimeBase

from .fakes import CONTAINER_ID
from .fakes import FailingStrategy
from .fakes import FakeRuntime


@pytest.fixture
def container_runtime(fake_runtime: FakeRuntime) -> OciRuntimeBase:
    return fake_runtime


@pytest.fixture
def expect_removed(fake_runtime: FakeRuntime) -> Iterator[None]:
    """Checks after the teardown of ``container_factory`` that every
    launched container has been removed exactly once.

    """
    yield
    created = fake_runtime.operations().count("create")
    assert created > 0
    assert fake_runtime.operations().count("remove") == created


# pylint: disable-next=unused-argument
def test_containers_are_removed_after_the_test(
    expect_removed: None,
    container_factory: ContainerFactory,
    fake_runtime: FakeRuntime,
) -> None:
    first = container_factory("registry.example.com/db")
    second = container_factory(
        "registry.example.com/app", ContainerRequest(cmd="serve")
    )

    assert first.container_id == second.container_id == CONTAINER_ID
    assert "remove" not in fake_runtime.operations()


# pylint: disable-next=unused-argument
def test_containers_that_did_not_become_ready_are_removed(
    expect_removed: None,
    container_factory: ContainerFactory,
) -> None:
    with pytest.raises(ContainerStartupError):
        container_factory(
            "registry.example.com/db",
            ContainerRequest(waiting_for=FailingStrategy()),
        )


# pylint: disable-next=unused-argument
def test_terminated_containers_are_not_removed_again(
    expect_removed: None,
    container_factory: ContainerFactory,
) -> None:
    container = container_factory("registry.example.com/db")
    container.terminate()


@pytest.fixture
def reset_log_level() -> Iterator[None]:
    level = _logger.level
    yield
    _logger.setLevel(level)


# pylint: disable-next=unused-argument
def test_log_level_option(
    reset_log_level: None,
    pytestconfig: pytest.Config,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    assert pytestconfig.getoption("testcontainer_log_level")
    monkeypatch.setattr(
        pytestconfig.option, "testcontainer_log_level", ["debug"]
    )

    set_logging_level_from_cli_args(pytestconfig)

    assert _logger.level == logging.DEBUG


@pytest.mark.parametrize(
    "value, pull_always", [(None, True), ("1", True), ("0", False)]
)
def test_pull_always_option(
    value: Optional[str], pull_always: bool, monkeypatch: pytest.MonkeyPatch
) -> None:
    if value is None:
        monkeypatch.delenv("PULL_ALWAYS", raising=False)
    else:
        monkeypatch.setenv("PULL_ALWAYS", value)

    assert get_always_pull_option() == pull_always
