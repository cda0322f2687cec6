# FILE: tests/test_entrypoint.py

import uvicorn

from nesa_exam import __main__ as entrypoint


def test_main_serves_app_with_configured_bind(monkeypatch):
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(entrypoint.settings, "api_port", 8123)
    entrypoint.main()
    app, kwargs = calls[0]
    assert app == "nesa_exam.main:app"
    assert kwargs["port"] == 8123
    assert kwargs["log_level"] == "info"
