"""
Shared pytest fixtures.
"""

import logging

import pytest

from backstop.core.circuit.registry import set_circuit_breaker_registry


@pytest.fixture(autouse=True)
def _isolate_global_state():
    """Drop handlers and the global breaker registry between tests."""
    yield
    logger = logging.getLogger("backstop")
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    set_circuit_breaker_registry(None)
