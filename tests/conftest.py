from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from taskmarket.config import AppSettings, ConsultationConfig, PollingConfig
from taskmarket.db import Database
from taskmarket.main import create_app
from taskmarket.orchestrator import EventBus, MarketplaceOrchestrator
from tests.fakes import FakeEscrow, FakeReputation, InMemoryLog


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=4000,
        polling=PollingConfig(interval_s=0.01, bid_timeout_s=1.0, deliverable_timeout_s=1.0),
        consultation=ConsultationConfig(
            quote_timeout_s=0.05,
            answer_timeout_s=0.2,
            short_answer_timeout_s=0.02,
        ),
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def orchestrator_factory(tmp_path: Path):
    async def _factory(*, log=None, escrow=None, reputation=None, watcher=None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        db = Database(settings.database_path)
        await db.init()
        log = log if log is not None else InMemoryLog()
        escrow = escrow if escrow is not None else FakeEscrow({settings.accounts.treasury_account: 1000.0})
        reputation = reputation if reputation is not None else FakeReputation()
        orchestrator = MarketplaceOrchestrator(settings, log, escrow, reputation, EventBus(db), watcher=watcher)
        return orchestrator, log, escrow, reputation

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, escrow=None, reputation=None, config_path: Path | None = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        escrow = escrow or FakeEscrow({settings.accounts.treasury_account: 1000.0})
        reputation = reputation or FakeReputation()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, escrow=escrow, reputation=reputation, config_path=cfg_path)
        return app, cfg_path, escrow, reputation

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, escrow, reputation = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.escrow = escrow  # type: ignore[attr-defined]
            http_client.reputation = reputation  # type: ignore[attr-defined]
            yield http_client
