import pytest
import logging

import search


def pytest_addoption(parser):
    """
    Adds options to pytest
    """
    parser.addoption(
        "--search-logger", action="store", choices=("debug", "info", "warning", "critical", "error"), help="Sets the log level", default="info"
        )


@pytest.fixture(scope="session")
def logger(request):
    """
    Returns log level requested.
    """
    # Keep urllib3 quiet so probe failures in tests do not flood the output
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    level = request.config.getoption("--search-logger")
    logger = search.setup_logger(level)
    return logger


@pytest.fixture(autouse=True, scope="function")
def blank_new_line():
    """
    Autouse feature to print a new line after the test name for cleaner printing.
    """
    print("")
