import pytest

from auditlog.config import DEFAULT_PSEUDONYMIZATION_SALT, Settings
from auditlog.main import _assert_protection_secrets


def test_default_salt_is_fatal_in_production():
    settings = Settings(app_env="prod", PSEUDONYMIZATION_SALT=DEFAULT_PSEUDONYMIZATION_SALT)
    with pytest.raises(RuntimeError):
        _assert_protection_secrets(settings)


def test_default_salt_is_tolerated_in_dev():
    _assert_protection_secrets(Settings(app_env="dev", PSEUDONYMIZATION_SALT=DEFAULT_PSEUDONYMIZATION_SALT))


def test_blob_encryption_requires_a_key():
    settings = Settings(app_env="prod", PSEUDONYMIZATION_SALT="s3cret", BLOB_ENCRYPT_FILES=True, BLOB_ENCRYPTION_KEY="")
    with pytest.raises(RuntimeError):
        _assert_protection_secrets(settings)


def test_configured_secrets_pass():
    _assert_protection_secrets(
        Settings(app_env="prod", PSEUDONYMIZATION_SALT="s3cret", BLOB_ENCRYPT_FILES=True, BLOB_ENCRYPTION_KEY="k")
    )


def test_routes_are_registered():
    from auditlog.main import app

    paths = {route.path for route in app.routes}
    assert {"/health", "/audit/events", "/audit/health", "/export/csv", "/apikeys"} <= paths
