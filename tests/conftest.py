import pytest
from fastapi.testclient import TestClient

from lanshare.discovery.models import DeviceIdentity, DeviceType
from lanshare.main import create_app
from lanshare.transfer.manager import SessionManager


def make_identity(fingerprint="local-fp", alias="Local Fox", port=53317) -> DeviceIdentity:
    return DeviceIdentity(
        alias=alias,
        version="2.1",
        device_model="pytest",
        device_type=DeviceType.HEADLESS,
        fingerprint=fingerprint,
        port=port,
    )


async def body(*chunks: bytes):
    for chunk in chunks:
        yield chunk


def offer(*files, alias="Remote Owl"):
    """Build a prepare-upload payload from (file_id, file_name, size) tuples."""
    return {
        "info": {"alias": alias, "fingerprint": "remote-fp", "port": 53317, "protocol": "http"},
        "files": {
            file_id: {
                "id": file_id,
                "fileName": file_name,
                "size": size,
                "fileType": "text/plain",
            }
            for file_id, file_name, size in files
        },
    }


@pytest.fixture
def identity():
    return make_identity()


@pytest.fixture
def manager(identity, tmp_path):
    return SessionManager(identity, download_dir=str(tmp_path), session_ttl=0)


@pytest.fixture
def client(identity, manager):
    return TestClient(create_app(identity, session_manager=manager))
