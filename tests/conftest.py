import sys

import pytest
import structlog


@pytest.fixture(autouse=True)
def _isolate_structlog():
    """Give every test the same structlog setup and undo configure() calls afterwards.

    Logs go to whatever sys.stderr is current when a message is emitted (as
    configure_logging does in production), so no test inherits a stream that
    an earlier test's output capture has already closed, and setup logging
    never mixes into captured stdout.
    """
    structlog.configure(logger_factory=lambda *args: structlog.PrintLogger(sys.stderr))
    yield
    structlog.reset_defaults()
