"""
Configuration tests
"""
import pytest
from pydantic import ValidationError
from zkregistry.config.settings import Settings, get_settings
from zkregistry.service_discovery.client import create_registry_client
from zkregistry.service_discovery.watch_registry import BlockingDelivery, DropIfFullDelivery


def test_settings_defaults():
    """Test defaults when nothing is set in the environment"""
    settings = Settings()

    assert settings.PROJECT_NAME == "zkregistry"
    assert settings.REGISTRY_BACKEND == "zookeeper"
    assert settings.REGISTRY_DELIVERY_POLICY == "blocking"
    assert settings.ZK_SESSION_TIMEOUT == 15
    assert settings.ZK_FATAL_ON_SESSION_LOSS == True


def test_settings_from_environment(monkeypatch):
    """Test environment variables override defaults"""
    monkeypatch.setenv("ZK_HOSTS", "zk1:2181, zk2:2181,,zk3:2181")
    monkeypatch.setenv("REGISTRY_BACKEND", "MEMORY")
    monkeypatch.setenv("ZK_SESSION_TIMEOUT", "30")

    settings = Settings()

    assert settings.hosts_list == ["zk1:2181", "zk2:2181", "zk3:2181"]
    assert settings.REGISTRY_BACKEND == "memory"
    assert settings.ZK_SESSION_TIMEOUT == 30


@pytest.mark.parametrize("field, value", [
    ("REGISTRY_BACKEND", "etcd"),
    ("REGISTRY_DELIVERY_POLICY", "lossy"),
    ("ZK_SESSION_TIMEOUT", 0),
])
def test_settings_validation(field, value):
    """Test invalid values are rejected"""
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_settings_caching():
    """Test settings are cached"""
    settings1 = get_settings()
    settings2 = get_settings()

    assert settings1 is settings2


@pytest.mark.asyncio
async def test_create_registry_client_memory_backend():
    """Test the memory backend builds a working client"""
    settings = Settings(REGISTRY_BACKEND="memory", REGISTRY_NAME="consumer", REGISTRY_DELIVERY_POLICY="drop")

    client = await create_registry_client(settings)
    try:
        assert client.name == "consumer"
        assert isinstance(client._delivery, DropIfFullDelivery)
        await client.create("/config-test")
        assert "config-test" in await client.list_children("/")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_create_registry_client_defaults_to_blocking_delivery():
    """Test blocking delivery and the configured timeout are the defaults"""
    client = await create_registry_client(Settings(REGISTRY_BACKEND="memory"))
    try:
        assert isinstance(client._delivery, BlockingDelivery)
        assert client.timeout == 15
    finally:
        await client.close()


def test_configure_logging_from_settings():
    """Test logging setup from settings quiets kazoo"""
    import logging
    import structlog
    from zkregistry.logging import configure_from_settings, get_logger

    try:
        configure_from_settings(Settings(LOG_LEVEL="DEBUG", LOG_JSON=True))

        assert logging.getLogger("kazoo").level == logging.WARNING
        get_logger("registry-client").info("configured", check=True)
    finally:
        structlog.reset_defaults()
        structlog.contextvars.clear_contextvars()
