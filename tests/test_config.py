from __future__ import annotations

import pytest
from pydantic import ValidationError

from skr_pipeline.config import AppConfig, load_config


def test_defaults_without_file(tmp_path) -> None:
    config = load_config(tmp_path / "missing.yaml", environ={})

    assert config.pipeline.db_path == "./data/skr-fyi.db"
    assert config.pipeline.max_concurrency == 10
    assert config.pipeline.wallet_batch_size == 100
    assert config.pipeline.holdings_sample_size == 0
    assert config.activity.sample_size == 2000
    assert config.aggregate.history_days == 90
    assert config.tokens.symbol_for(config.tokens.skr_mint) == "SKR"
    assert config.tokens.symbol_for("nope") is None
    assert config.discovery.strategies[0] == "search_assets"


def test_yaml_values_and_env_overrides(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "\n".join(
            [
                "pipeline:",
                "  db_path: /tmp/from-yaml.db",
                "  wallet_batch_size: 25",
                "activity:",
                "  sample_size: 300",
                "log_level: DEBUG",
            ]
        ),
        encoding="utf-8",
    )

    config = load_config(
        path,
        environ={
            "HELIUS_API_KEY": "secret",
            "DB_PATH": "/tmp/from-env.db",
            "MAX_CONCURRENCY": "4",
            "HOLDINGS_SAMPLE_SIZE": "",
        },
    )

    assert config.oracle.api_key == "secret"
    assert config.pipeline.db_path == "/tmp/from-env.db"
    assert config.pipeline.max_concurrency == 4
    assert config.pipeline.wallet_batch_size == 25
    assert config.pipeline.holdings_sample_size == 0
    assert config.activity.sample_size == 300
    assert config.log_level == "DEBUG"


def test_config_path_from_environment(tmp_path) -> None:
    path = tmp_path / "custom.yaml"
    path.write_text("aggregate:\n  output_path: /srv/dashboard.json\n", encoding="utf-8")

    config = load_config(environ={"SKR_CONFIG": str(path)})

    assert config.aggregate.output_path == "/srv/dashboard.json"


def test_bad_numeric_override_is_reported(tmp_path) -> None:
    with pytest.raises(ValueError, match="MAX_CONCURRENCY"):
        load_config(tmp_path / "missing.yaml", environ={"MAX_CONCURRENCY": "many"})


def test_config_is_immutable() -> None:
    config = AppConfig()
    with pytest.raises(ValidationError):
        config.pipeline.max_concurrency = 99
