from pathlib import Path

import pytest
from pydantic import ValidationError

from archive_index_pipeline.config import Settings


def test_settings_defaults() -> None:
    settings = Settings.model_validate({})
    assert settings.meilisearch_host == "http://localhost:7700"
    assert settings.source_id_prefix == "DE-1958_"
    assert settings.file_slice_size == 1000
    assert settings.flush_threshold == 5000
    assert settings.nats_url is None


def test_settings_parses_aliases() -> None:
    settings = Settings.model_validate(
        {
            "MEILISEARCH_HOST": "http://meili:7700",
            "MEILISEARCH_API_KEY": "master",
            "INDEX_ENV": "production",
            "DATA_DIR": "/srv/findbuecher",
            "HTTP_MAX_RETRIES": "3",
            "LOG_JSON": "true",
        }
    )
    assert settings.index_env == "production"
    assert settings.data_dir == Path("/srv/findbuecher")
    assert settings.http_max_retries == 3
    assert settings.log_json is True


def test_settings_reject_non_positive_sizes() -> None:
    with pytest.raises(ValidationError):
        Settings.model_validate({"FILE_SLICE_SIZE": 0})
