import pytest
from pydantic import ValidationError

from sync_engine.config import ConflictPolicy, SyncSettings


def test_defaults_from_empty_env():
    settings = SyncSettings.from_env({})

    assert settings.batch_size == 10
    assert settings.retry_threshold == 3
    assert settings.connectivity_timeout == 5.0
    assert settings.conflict_policy == ConflictPolicy.TRUST_REMOTE
    assert settings.database_url is None


def test_values_from_env():
    settings = SyncSettings.from_env({
        "DATABASE_URL": "postgresql://u:p@db/sync",
        "SYNC_API_BASE_URL": "https://api.example.com",
        "SYNC_BATCH_SIZE": "25",
        "SYNC_RETRY_THRESHOLD": "5",
        "SYNC_CONNECTIVITY_TIMEOUT": "2.5",
        "SYNC_CONFLICT_POLICY": "last_writer_wins",
    })

    assert settings.database_url == "postgresql://u:p@db/sync"
    assert settings.api_base_url == "https://api.example.com"
    assert settings.batch_size == 25
    assert settings.retry_threshold == 5
    assert settings.connectivity_timeout == 2.5
    assert settings.conflict_policy == ConflictPolicy.LAST_WRITER_WINS


@pytest.mark.parametrize("key,value", [
    ("SYNC_BATCH_SIZE", "0"),
    ("SYNC_RETRY_THRESHOLD", "0"),
    ("SYNC_CONNECTIVITY_TIMEOUT", "-1"),
    ("SYNC_CONFLICT_POLICY", "coin_flip"),
])
def test_invalid_values_rejected(key, value):
    with pytest.raises(ValidationError):
        SyncSettings.from_env({key: value})
