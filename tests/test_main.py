from fastapi.testclient import TestClient

from harvest import main
from harvest.config import get_settings
from harvest.services.dispatch import JobDispatcher


class RecordingDispatcher:
    pending = 0

    def __init__(self, events: list[str]):
        self.events = events

    async def drain(self, timeout=None) -> bool:
        self.events.append(f"drain:{timeout}")
        return True


def _env(monkeypatch, **extra):
    monkeypatch.setenv("ORCHARD_BOOTSTRAP_ADMIN_TOKEN", "admin-token")
    monkeypatch.setenv("ORCHARD_SUPPORTED_IMAGES", "ghcr.io/cirruslabs/macos-sonoma")
    for key, value in extra.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setattr(main, "configure_logging", lambda verbose=False: None)
    get_settings.cache_clear()


def test_startup_without_bootstrap_wires_state(monkeypatch):
    _env(monkeypatch, SKIP_ORCHARD_BOOTSTRAP="true")
    try:
        with TestClient(main.app) as client:
            assert isinstance(main.app.state.dispatcher, JobDispatcher)
            assert main.app.state.teardown is None
            assert main.app.state.dispatcher.manager.supported_images == [
                "ghcr.io/cirruslabs/macos-sonoma"
            ]
            response = client.get("/v1/vms")
            assert response.status_code == 200
            assert response.json() == []
    finally:
        get_settings.cache_clear()


def test_startup_configures_orchard_and_tears_down_on_shutdown(monkeypatch):
    _env(monkeypatch, SHUTDOWN_DRAIN_SEC="2.5")
    events: list[str] = []

    async def fake_configure_orchard(orchard, settings):
        events.append(f"configure:{orchard.binary}")

        async def teardown() -> None:
            events.append("teardown")

        return teardown

    monkeypatch.setattr(main, "configure_orchard", fake_configure_orchard)
    try:
        with TestClient(main.app) as client:
            assert client.get("/healthz").status_code == 200
            assert events == ["configure:orchard"]
            main.app.state.dispatcher = RecordingDispatcher(events)
        assert events == ["configure:orchard", "drain:2.5", "teardown"]
    finally:
        get_settings.cache_clear()
