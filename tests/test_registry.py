import logging

import pytest

from actionqueue.models.errors import HandlerNotFoundError
from actionqueue.scheduling.registry import HandlerRegistry


def handler_a(ctx):
    return {"handler": "a"}


def handler_b(ctx):
    return {"handler": "b"}


def test_register_and_lookup():
    registry = HandlerRegistry()
    registry.register("sync", handler_a, concurrency_limit=2)

    config = registry.lookup("sync")
    assert config.handler is handler_a
    assert config.concurrency_limit == 2
    assert "sync" in registry
    assert len(registry) == 1


def test_lookup_unknown_type():
    registry = HandlerRegistry()
    with pytest.raises(HandlerNotFoundError) as excinfo:
        registry.lookup("missing")
    assert excinfo.value.code == "HANDLER_NOT_FOUND"


def test_duplicate_registration_replaces_and_warns(caplog):
    registry = HandlerRegistry()
    registry.register("sync", handler_a)
    with caplog.at_level(logging.WARNING):
        registry.register("sync", handler_b)

    assert registry.lookup("sync").handler is handler_b
    assert "Duplicate job type" in caplog.text
    assert registry.types() == ["sync"]


def test_register_rejects_bad_input():
    registry = HandlerRegistry()
    with pytest.raises(ValueError):
        registry.register("", handler_a)
    with pytest.raises(TypeError):
        registry.register("sync", "not callable")
    with pytest.raises(ValueError):
        registry.register("sync", handler_a, concurrency_limit=-1)
