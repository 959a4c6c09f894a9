"""Extension registry."""
import logging
from types import SimpleNamespace

from botwatch import extensions
from botwatch.extensions import ExtensionRegistry


def test_register_and_emit():
    registry = ExtensionRegistry()
    seen = []
    registry.register("event.classified", seen.append)
    registry.emit("event.classified", {"category": "mention"})
    assert seen == [{"category": "mention"}]
    assert registry.registered_events() == ["event.classified"]
    assert registry.handler_count("event.classified") == 1


def test_emit_without_payload():
    registry = ExtensionRegistry()
    seen = []
    registry.register("health.hang", seen.append)
    registry.emit("health.hang")
    assert seen == [{}]


def test_unregister():
    registry = ExtensionRegistry()
    seen = []
    registry.register("session.report", seen.append)
    registry.unregister("session.report", seen.append)
    registry.unregister("session.report", seen.append)
    registry.emit("session.report", {"summary": "x"})
    assert seen == []
    assert registry.registered_events() == []


def test_failing_handler_is_isolated(caplog):
    registry = ExtensionRegistry()
    seen = []

    def broken(payload):
        raise RuntimeError("nope")

    registry.register("event.classified", broken)
    registry.register("event.classified", seen.append)
    with caplog.at_level(logging.WARNING, logger="botwatch.extensions"):
        registry.emit("event.classified", {"n": 1})
    assert seen == [{"n": 1}]
    assert "broken" in caplog.text


def test_registries_are_independent():
    a, b = ExtensionRegistry(), ExtensionRegistry()
    seen = []
    a.register("event.classified", seen.append)
    b.emit("event.classified", {"n": 1})
    assert seen == []
    assert b.registered_events() == []


def test_plugins_receive_the_registry_once(monkeypatch):
    calls = []

    def register_all(registry):
        calls.append(registry)
        registry.register("health.hang", lambda payload: None)

    fake_ep = SimpleNamespace(name="pager", load=lambda: register_all)
    monkeypatch.setattr(extensions.importlib.metadata, "entry_points", lambda group: [fake_ep])

    registry = ExtensionRegistry()
    registry.load_plugins()
    registry.load_plugins()
    assert calls == [registry]
    assert registry.handler_count("health.hang") == 1
