import os
import sys
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.connection_config import parse_connection_config  # noqa: E402
from config.settings import Settings  # noqa: E402
from core.models import ConnectionType, CustodianConnection, CustodianType  # noqa: E402


class FakeEncryptor:
    """Reversible stand-in for the field encryption service."""

    def encrypt_field(self, plaintext):
        return {"cipherText": plaintext[::-1], "iv": "iv", "tag": "tag", "salt": "salt"}

    def decrypt_field(self, record):
        return record["cipherText"][::-1]


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, topic, payload):
        self.events.append((topic, payload))

    def topics(self):
        return [topic for topic, _ in self.events]


@pytest.fixture
def test_settings(tmp_path):
    """Settings with no real delays and a temporary download directory."""
    values = {k: getattr(Settings, k) for k in dir(Settings) if k.isupper()}
    values.update({
        "LOCAL_DOWNLOAD_DIR": str(tmp_path / "downloads"),
        "REST_PAGE_SIZE": 2,
        "REST_PAGE_DELAY_SECONDS": 0.0,
        "ORDER_SUBMISSION_DELAY_SECONDS": 0.0,
    })
    return SimpleNamespace(**values)


@pytest.fixture
def encryptor():
    return FakeEncryptor()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def sleep():
    return Mock()


@pytest.fixture
def rest_config():
    return parse_connection_config({
        "baseUrl": "https://api.example.com/trader",
        "apiVersion": "v1",
        "authentication": {
            "type": "OAUTH2",
            "credentials": {"clientId": "client-1", "clientSecret": "s3cret"},
        },
        "endpoints": {
            "positions": "/positions",
            "transactions": "/transactions",
            "cashBalances": "/balances",
            "orderSubmission": "/orders",
        },
    })


@pytest.fixture
def sftp_config():
    return parse_connection_config({
        "authentication": {
            "type": "BASIC",
            "credentials": {"username": "recon", "password": "pw"},
        },
        "fileTransfer": {
            "protocol": "SFTP",
            "host": "sftp.custodian.test",
            "port": 22,
            "directory": "/outbound/",
            "documentsDirectory": "/documents",
        },
    })


def make_connection(config, custodian_type=CustodianType.SCHWAB, connection_type=ConnectionType.REST_API, **kwargs):
    return CustodianConnection(
        id=kwargs.pop("id", "conn-1"),
        tenant_id=kwargs.pop("tenant_id", "tenant-1"),
        custodian_type=custodian_type,
        custodian_name=custodian_type.value.title(),
        custodian_code=custodian_type.value,
        connection_type=connection_type,
        connection_config=config,
        **kwargs,
    )


@pytest.fixture
def rest_connection(rest_config):
    return make_connection(rest_config)


@pytest.fixture
def pershing_sftp_connection(sftp_config):
    return make_connection(sftp_config, CustodianType.PERSHING, ConnectionType.SFTP, id="conn-pershing")


@pytest.fixture
def fidelity_connection(sftp_config):
    return make_connection(sftp_config, CustodianType.FIDELITY, ConnectionType.SFTP, id="conn-fidelity")


@pytest.fixture
def connection_factory():
    return make_connection
