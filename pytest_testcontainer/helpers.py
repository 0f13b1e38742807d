"""The helpers module contains functions for adding & retrieving command line
flags from pytest and for reading the configuration from the environment.

"""
import logging
import os

from _pytest.config import Config
from _pytest.config.argparsing import Parser

from pytest_testcontainer.logging import set_internal_logging_level


def add_logging_level_options(parser: Parser) -> None:
    """Add the command line parameter ``--testcontainer-log-level`` to the
    pytest parser. The user can then configure the log level of this library.

    This function is called by the plugin in ``pytest_addoption``. To actually
    set the log level, :py:func:`set_logging_level_from_cli_args` has to be
    called as well.
    """
    log_level_upcase = list(logging._levelToName.values())
    parser.addoption(
        "--testcontainer-log-level",
        type=str,
        nargs=1,
        default=["INFO"],
        choices=log_level_upcase
        + [level.lower() for level in log_level_upcase],
        help="Set the internal logging level of the pytest_testcontainer library",
    )


def set_logging_level_from_cli_args(config: Config) -> None:
    """Sets the internal logging level of this library to the value supplied by
    the cli argument ``--testcontainer-log-level``.

    This function has to be called before all tests get executed, but after the
    parser option has been added, e.g. in the `pytest_configure
    <https://docs.pytest.org/en/latest/reference/reference.html#_pytest.hookspec.pytest_configure>`_
    hook.

    """
    set_internal_logging_level(
        config.getoption("testcontainer_log_level", default=["INFO"])[
            0
        ].upper()
    )


def get_always_pull_option() -> bool:
    """Returns whether images should be always pulled before launching the
    container or whether the container runtime can use the locally cached
    image. This setting is controlled via the environment variable
    ``PULL_ALWAYS``. If the environment variable is unset, then the default is
    ``True``.

    """
    return bool(int(os.getenv("PULL_ALWAYS", "1")))
