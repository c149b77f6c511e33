"""
Tests — Settings loading and provider selection.
"""
import pytest

from config.settings import (
    QueueConfig, RabbitMQConfig, SqsConfig, get_settings, load_settings, reset_settings,
)
from queues.errors import QueueConfigurationError
from queues.factory import create_queue_provider, create_queue_service
from queues.rabbitmq_provider import RabbitMQQueueProvider
from queues.sqs_provider import SqsQueueProvider

_ENV_VARS = [
    "QUEUE_PROVIDER", "AWS_REGION", "AWS_ENDPOINT_URL", "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY", "RABBITMQ_URL", "PORT", "LOG_LEVEL", "QUEUEBRIDGE_CONFIG",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    reset_settings()
    yield
    reset_settings()


def _write(tmp_path, text: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(text)
    return str(path)


# ══════════════════════════════════════════════════════════════
#  SETTINGS
# ══════════════════════════════════════════════════════════════

class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.queue.provider == "sqs"
        assert settings.queue.sqs is None
        assert settings.server.port == 3000
        assert settings.logging.level == "INFO"

    def test_yaml_sections(self, tmp_path):
        path = _write(tmp_path, """
app_name: "Bridge"
queue:
  provider: RabbitMQ
  rabbitmq:
    url: "amqp://u:p@broker:5672/"
    prefetch_count: 4
server:
  port: 8080
logging:
  level: debug
  json: "true"
""")
        settings = load_settings(path)
        assert settings.app_name == "Bridge"
        assert settings.queue.provider == "rabbitmq"
        assert settings.queue.rabbitmq == RabbitMQConfig(url="amqp://u:p@broker:5672/", prefetch_count=4)
        assert settings.server.port == 8080
        assert settings.logging.level == "DEBUG"
        assert settings.logging.json is True

    def test_sqs_section_with_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SQS_REGION_FOR_TEST", "eu-west-1")
        path = _write(tmp_path, """
queue:
  provider: sqs
  sqs:
    region: "${SQS_REGION_FOR_TEST}"
    endpoint_url: "http://localhost:4566"
    poll_interval: 2.5
""")
        sqs = load_settings(path).queue.sqs
        assert sqs.region == "eu-west-1"
        assert sqs.endpoint_url == "http://localhost:4566"
        assert sqs.poll_interval == 2.5
        assert sqs.max_messages == 10

    def test_unset_placeholder_is_kept(self, tmp_path):
        path = _write(tmp_path, 'queue:\n  sqs:\n    region: "${NOT_SET_ANYWHERE_42}"\n')
        assert load_settings(path).queue.sqs.region == "${NOT_SET_ANYWHERE_42}"

    def test_environment_overrides(self, tmp_path, monkeypatch):
        path = _write(tmp_path, "queue:\n  provider: sqs\n")
        monkeypatch.setenv("QUEUE_PROVIDER", "RABBITMQ")
        monkeypatch.setenv("RABBITMQ_URL", "amqp://env/")
        monkeypatch.setenv("AWS_REGION", "us-west-2")
        monkeypatch.setenv("PORT", "9000")
        monkeypatch.setenv("LOG_LEVEL", "warning")

        settings = load_settings(path)
        assert settings.queue.provider == "rabbitmq"
        assert settings.queue.rabbitmq.url == "amqp://env/"
        assert settings.queue.sqs.region == "us-west-2"
        assert settings.server.port == 9000
        assert settings.logging.level == "WARNING"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = _write(tmp_path, "app_name: FromEnv\n")
        monkeypatch.setenv("QUEUEBRIDGE_CONFIG", path)
        assert get_settings().app_name == "FromEnv"
        assert get_settings() is get_settings()


# ══════════════════════════════════════════════════════════════
#  FACTORY
# ══════════════════════════════════════════════════════════════

class TestProviderFactory:
    def test_sqs_provider(self):
        provider = create_queue_provider(QueueConfig(
            provider="sqs",
            sqs=SqsConfig(region="us-east-1", endpoint_url="http://localhost:4566",
                          access_key_id="test", secret_access_key="test"),
        ))
        assert isinstance(provider, SqsQueueProvider)
        assert provider.name == "sqs"

    def test_rabbitmq_provider(self):
        provider = create_queue_provider(QueueConfig(
            provider="rabbitmq", rabbitmq=RabbitMQConfig(url="amqp://localhost/"),
        ))
        assert isinstance(provider, RabbitMQQueueProvider)

    def test_service_wraps_provider(self):
        service = create_queue_service(QueueConfig(
            provider="rabbitmq", rabbitmq=RabbitMQConfig(url="amqp://localhost/"),
        ))
        assert service.provider_name == "rabbitmq"

    def test_missing_sqs_section(self):
        with pytest.raises(QueueConfigurationError,
                           match="SQS configuration is required when using SQS provider"):
            create_queue_provider(QueueConfig(provider="sqs"))

    def test_sqs_requires_region(self):
        with pytest.raises(QueueConfigurationError, match="requires a region"):
            create_queue_provider(QueueConfig(provider="sqs", sqs=SqsConfig()))

    @pytest.mark.parametrize("rabbitmq", [None, RabbitMQConfig(url="")])
    def test_missing_rabbitmq_url(self, rabbitmq):
        with pytest.raises(QueueConfigurationError,
                           match="RabbitMQ configuration is required"):
            create_queue_provider(QueueConfig(provider="rabbitmq", rabbitmq=rabbitmq))

    def test_unknown_provider(self):
        with pytest.raises(QueueConfigurationError, match='Unknown queue provider "kafka"'):
            create_queue_provider(QueueConfig(provider="kafka"))
