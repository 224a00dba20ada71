from pathlib import Path
from typing import Any

import yaml

from snoopy.common import config


def _write_yaml(tmp_path: Path, data: dict[str, Any], name: str = "cfg.yaml") -> Path:
    """Serialize *data* to YAML and return the absolute path."""
    file_path = tmp_path / name
    file_path.write_text(yaml.safe_dump(data))
    return file_path


def test_from_file_success(tmp_path: Path) -> None:
    raw = {
        "chain": {
            "kwargs": {
                "rpc_url": ["wss://a", "https://b"],
                "commiter_address": "0xD7092928Be395B318cDaeEAE0245b0a66ae357a3",
                "manager_address": "0x9f9d8535e8A2E503E034b142F136ABF3BeCF3CF2",
            }
        },
        "orchestrator": {"kwargs": {"quorum_size": 3}},
    }
    cfg_file = _write_yaml(tmp_path, raw)

    cfg = config.Config.from_file(cfg_file)

    assert isinstance(cfg.chain, config.ConfigClass)
    assert cfg.chain.kwargs["rpc_url"] == ["wss://a", "https://b"]
    assert cfg.orchestrator.kwargs == {"quorum_size": 3}
    # Missing sections fall back to empty kwargs.
    assert cfg.prover.kwargs == {}
    assert cfg.api.kwargs == {}


def test_from_file_empty(tmp_path: Path) -> None:
    cfg_file = tmp_path / "empty.yaml"
    cfg_file.write_text("")

    cfg = config.Config.from_file(cfg_file)

    assert cfg.store.kwargs == {}


def test_env_expansion(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("DB_PASSWORD", "s3cret")
    monkeypatch.delenv("SIGNER", raising=False)
    cfg_file = tmp_path / "env.yaml"
    cfg_file.write_text(
        "store:\n"
        "  kwargs:\n"
        '    password: "${DB_PASSWORD}"\n'
        '    user: "${DB_USER:-subsqd_adm}"\n'
        "chain:\n"
        "  kwargs:\n"
        '    signer: "${SIGNER}"\n'
    )

    cfg = config.Config.from_file(cfg_file)

    assert cfg.store.kwargs == {"password": "s3cret", "user": "subsqd_adm"}
    assert cfg.chain.kwargs["signer"] == ""


def test_shipped_config_loads() -> None:
    cfg = config.Config.from_file(Path(__file__).parents[2] / "config" / "mainnet.yaml")

    assert cfg.orchestrator.kwargs["quorum_size"] == 5
    assert cfg.orchestrator.kwargs["config_name"] == "std-long"
    assert cfg.store.kwargs["database"] == "mainnet"
    assert cfg.api.kwargs["port"] == 8000
