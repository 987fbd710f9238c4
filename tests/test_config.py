from pathlib import Path

import pytest

from deckreview.config import load_config
from deckreview.errors import ConfigurationError


def test_load_config_reads_environment_and_overrides():
    env = {
        "DECKREVIEW_SECRET": "s3cret",
        "DECKREVIEW_DATA_ROOT": "/srv/deckreview",
        "DECKREVIEW_MAX_PAGES": "12",
        "DECKREVIEW_POLL_INTERVAL": "0.5",
    }

    config = load_config(env, db_path=Path("custom.db"), base_url=None)

    assert config.secret == "s3cret"
    assert config.max_pages == 12
    assert config.poll_interval == 0.5
    assert config.db_path == Path("custom.db")
    assert config.storage_root == Path("/srv/deckreview") / "storage"
    assert config.validate() is config


def test_validate_fails_fast():
    with pytest.raises(ConfigurationError, match="DECKREVIEW_SECRET"):
        load_config({}).validate()
    with pytest.raises(ConfigurationError, match="API_KEY"):
        load_config(
            {"DECKREVIEW_SECRET": "x", "DECKREVIEW_ANALYSIS_ENDPOINT": "https://inference.example"}
        ).validate()
    with pytest.raises(ConfigurationError, match="integer"):
        load_config({"DECKREVIEW_MAX_PAGES": "many"})
