"""Tests for configuration, logging setup and the command line."""

import logging
from pathlib import Path

import pytest

from container_layer_sizes import cli
from container_layer_sizes.config import AnalyzerConfig, StorageConfig
from container_layer_sizes.logging_utils import parse_level


def test_analyzer_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("LAYER_SIZES_PORT", "6000")
    monkeypatch.setenv("LAYER_SIZES_WORKERS", "3")
    monkeypatch.setenv("LAYER_SIZES_TASK_TIMEOUT", "12.5")
    monkeypatch.setenv("LAYER_SIZES_STORAGE_DIR", str(tmp_path))
    monkeypatch.setenv("LAYER_SIZES_INSECURE_REGISTRIES", "registry.local, 10.0.0.1")

    config = AnalyzerConfig.from_env()

    assert config.port == 6000
    assert config.workers == 3
    assert config.task_timeout == 12.5
    assert config.storage_dir == tmp_path
    assert config.insecure_registries == ("registry.local", "10.0.0.1")
    assert config.scratch_dir is None


def test_analyzer_config_validation():
    with pytest.raises(ValueError):
        AnalyzerConfig(workers=0)
    with pytest.raises(ValueError):
        AnalyzerConfig(task_timeout=0)


def test_storage_config_from_env(monkeypatch):
    monkeypatch.setenv("LAYER_SIZES_SQLITE_DBPATH", "/data/history.sqlite3")
    monkeypatch.setenv("LAYER_SIZES_STORAGE_PORT", "4141")

    config = StorageConfig.from_env()

    assert config.db_path == Path("/data/history.sqlite3")
    assert config.port == 4141
    assert config.log_level == "WARNING"


def test_parse_level():
    assert parse_level("debug") == logging.DEBUG
    assert parse_level("WARNING") == logging.WARNING
    assert parse_level(logging.ERROR) == logging.ERROR
    with pytest.raises(ValueError):
        parse_level("chatty")


@pytest.mark.parametrize(
    "addr, expected",
    [(":5050", ("0.0.0.0", 5050)), ("127.0.0.1:4040", ("127.0.0.1", 4040))],
)
def test_parse_addr(addr, expected):
    assert cli.parse_addr(addr, "0.0.0.0") == expected


@pytest.mark.parametrize("addr", ["5050", "host:port"])
def test_parse_addr_rejects_invalid(addr):
    with pytest.raises(ValueError):
        cli.parse_addr(addr, "0.0.0.0")


def test_analyzer_flags_override_config(tmp_path):
    args = cli.build_parser().parse_args(
        [
            "analyzer",
            "--addr",
            ":7070",
            "--workers",
            "4",
            "--timeout",
            "60",
            "--storage-dir",
            str(tmp_path),
            "--verbosity",
            "debug",
        ]
    )

    config = cli.analyzer_config(args)

    assert (config.host, config.port) == ("0.0.0.0", 7070)
    assert config.workers == 4
    assert config.task_timeout == 60
    assert config.storage_dir == tmp_path
    assert config.log_level == "debug"


def test_storage_flags_override_config(tmp_path):
    args = cli.build_parser().parse_args(
        ["storage", "--sqlite-dbpath", str(tmp_path / "db.sqlite3"), "--addr", ":4545"]
    )

    config = cli.storage_config(args)

    assert config.db_path == tmp_path / "db.sqlite3"
    assert config.port == 4545


def test_main_rejects_invalid_verbosity(monkeypatch):
    started = []
    monkeypatch.setattr(cli, "run_storage", started.append)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["storage", "--verbosity", "chatty"])

    assert excinfo.value.code == 2
    assert started == []


def test_main_runs_selected_service(monkeypatch, tmp_path):
    started = []
    monkeypatch.setattr(cli, "run_storage", started.append)

    assert cli.main(["storage", "--sqlite-dbpath", str(tmp_path / "db.sqlite3")]) == 0

    assert len(started) == 1
    assert isinstance(started[0], StorageConfig)


def test_subcommand_is_required():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])
