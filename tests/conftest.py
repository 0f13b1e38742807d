# pylint: disable=missing-function-docstring,missing-module-docstring
import pytest
from typeguard import install_import_hook
from typeguard import typechecked

from pytest_testcontainer.errors import EngineConnectionError
from pytest_testcontainer.runtime import OciRuntimeBase
from pytest_testcontainer.runtime import get_selected_runtime

from .fakes import FakeRuntime


def pytest_runtest_call(item):
    # Decorate every test function [e.g. test_foo()] with typeguard's
    # typechecked() decorator.
    test_func = getattr(item, "obj", None)
    if test_func is not None:
        setattr(item, "obj", typechecked(test_func))


def pytest_configure(config):
    install_import_hook("pytest_testcontainer")


@pytest.fixture
def fake_runtime(monkeypatch: pytest.MonkeyPatch) -> FakeRuntime:
    monkeypatch.setenv("PULL_ALWAYS", "1")
    return FakeRuntime()


@pytest.fixture(scope="session")
def real_runtime() -> OciRuntimeBase:
    """The container runtime of the host, tests using it are skipped if there
    is none.

    """
    try:
        return get_selected_runtime()
    except EngineConnectionError as conn_err:
        pytest.skip(f"no container runtime available: {conn_err}")

