from __future__ import annotations

import json
from pathlib import Path

import jsonschema
import yaml

from roster_sync.config.loader import SCHEMA_PATH, load_config

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def test_schema_file_is_valid_draft():
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    jsonschema.Draft202012Validator.check_schema(schema)


def test_shipped_example_config_validates():
    example = PROJECT_ROOT / "config" / "sync.yml"
    data = yaml.safe_load(example.read_text(encoding="utf-8"))
    jsonschema.validate(data, json.loads(SCHEMA_PATH.read_text(encoding="utf-8")))
    cfg = load_config(example, use_env=False)
    assert cfg.sheet_id == "devices-main"
    assert cfg.store.transactions == "auto"
