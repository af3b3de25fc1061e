import pytest

from relay.app.config import get_settings

API_KEY_VARIABLES = ("DASHSCOPE_API_KEY", "DEEPSEEK_API_KEY", "UPSTREAM_API_KEY")


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep the developer's shell and .env file out of every test"""
    for name in API_KEY_VARIABLES + ("DEPLOYMENT_PROFILE", "AUTHORIZATION_MODE", "ALLOWED_ORIGINS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
