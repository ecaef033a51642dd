from __future__ import annotations

import logging

import pytest

from rt_canvas.cli import build_settings, parse_arguments
from rt_canvas.core.config import Settings, get_settings
from rt_canvas.core.errors import ProtocolError
from rt_canvas.core.logging import configure_logging
from rt_canvas.core.metrics import SyncMetrics
from rt_canvas.ws.protocol import OperationModel, decode_message


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("LISTEN_PORT", "9123")
    monkeypatch.setenv("ADVERTISE_HOSTS", "10.0.0.5, ,192.168.1.2")
    monkeypatch.setenv("OFFLINE", "yes")
    monkeypatch.setenv("PRESENCE_INTERVAL_MS", "20")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.listen_port == 9123
        assert settings.advertise_hosts == ["10.0.0.5", "192.168.1.2"]
        assert settings.offline is True
        assert settings.presence_interval_ms == 20
        assert get_settings() is settings
    finally:
        get_settings.cache_clear()


def test_cli_flags_override_settings():
    base = Settings(offline=False, listen_port=7878, display_name=None)

    args = parse_arguments(["canvas.json", "--offline", "--port", "9000", "--name", "Robin"])
    settings = build_settings(args, base)
    assert args.file == "canvas.json"
    assert settings.offline is True
    assert settings.listen_port == 9000
    assert settings.display_name == "Robin"

    # flags left out keep the configured values
    untouched = build_settings(parse_arguments([]), base)
    assert untouched.offline is False
    assert untouched.listen_port == 7878
    assert parse_arguments(["--join", "rtcanvas1abc"]).join == "rtcanvas1abc"


def test_configure_logging_is_idempotent(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    log_file = str(tmp_path / "node.log")
    try:
        configure_logging("debug", log_file)
        configure_logging("debug", log_file)
        added = [h for h in root.handlers if h not in before]
        assert sum(type(h) is logging.StreamHandler for h in root.handlers) == 1
        assert len([h for h in added if isinstance(h, logging.FileHandler)]) == 1
        assert root.level == logging.DEBUG
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
                handler.close()


def test_metrics_combine_and_render():
    a, b = SyncMetrics(), SyncMetrics()
    a.incr("ops_applied", 3)
    b.incr("ops_applied", 2)
    b.incr("peer_connects")
    for ms in range(1, 21):
        a.record_latency(float(ms))

    total = SyncMetrics.combine([a, b])
    assert total.counters["ops_applied"] == 5
    assert total.counters["peer_connects"] == 1
    assert total.p95_latency_ms() == 19.0
    assert total.summary()["p95_apply_latency_ms"] == 19.0

    text = total.render_prometheus()
    assert 'canvas_events_total{kind="ops_applied"} 5' in text
    assert "canvas_apply_latency_p95_ms 19.0" in text
    assert SyncMetrics().p95_latency_ms() == 0.0


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        '{"type": "teleport"}',
        '{"type": "presence_leave"}',
    ],
)
def test_decode_rejects_bad_frames(raw):
    with pytest.raises(ProtocolError):
        decode_message(raw)


def test_operation_model_rejects_unknown_kind():
    model = OperationModel(id=("a" * 32, 1), kind="explode", payload={})
    with pytest.raises(ProtocolError):
        model.to_operation()
