import dataclasses

import pytest
from fastapi.testclient import TestClient

from catalog import Catalog
from config import settings
from covers import CoverStorage


@pytest.fixture
def test_settings(tmp_path, request):
    # Unique database file and image directory for each test
    return dataclasses.replace(
        settings,
        database_file=str(tmp_path / f"test_{request.node.name}.db"),
        images_dir=str(tmp_path / "images"),
        admin_users=["denny"],
        trust_requester_header=True,
        delete_replaced_covers=False,
        expose_error_details=True,
        bcrypt_rounds=4,
        jwt_secret_key="test-secret",
    )


@pytest.fixture
def covers(test_settings):
    return CoverStorage(test_settings.images_dir)


@pytest.fixture
def catalog(test_settings, covers):
    cat = Catalog(
        db_file=test_settings.database_file,
        covers=covers,
        admins=test_settings.admin_users,
    )
    yield cat
    cat.close()


@pytest.fixture
def client(test_settings):
    from api import create_app

    return TestClient(create_app(test_settings))


@pytest.fixture
def strict_client(test_settings):
    """Client for an app that requires a bearer token to identify the caller."""
    from api import create_app

    return TestClient(create_app(dataclasses.replace(test_settings, trust_requester_header=False)))
