import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import build_service, create_app
from app.service import RequestContext

from helpers import ADMIN_TOKEN, MERCHANT_KEY, OTHER_MERCHANT_KEY, write_providers


@pytest.fixture
def providers_file(tmp_path):
    def _write(*providers):
        return write_providers(tmp_path / "providers.json", list(providers))
    return _write


@pytest.fixture
def settings_for(tmp_path):
    def _settings(*providers, **overrides):
        path = write_providers(tmp_path / "providers.json", list(providers))
        values = dict(
            providers_path=path,
            merchant_api_keys={MERCHANT_KEY: "m_alpha", OTHER_MERCHANT_KEY: "m_beta"},
            admin_token=ADMIN_TOKEN,
            idempotency_wait_seconds=5.0,
        )
        values.update(overrides)
        return Settings(**values)
    return _settings


@pytest.fixture
def service_for(settings_for):
    def _service(*providers, gateway=None, **overrides):
        return build_service(settings_for(*providers, **overrides), gateway)
    return _service


@pytest.fixture
def ctx():
    return RequestContext(merchant_id="m_alpha")


@pytest.fixture
def client_for(settings_for):
    def _client(*providers, gateway=None, **overrides):
        app = create_app(settings_for(*providers, **overrides), gateway)
        return TestClient(app, headers={"X-Api-Key": MERCHANT_KEY})
    return _client
