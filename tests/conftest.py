from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure local "src/" takes precedence over any globally-installed "faucet" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)


@pytest.fixture(autouse=True)
def _reset_metrics():
    from faucet.runtime.metrics import reset

    reset()
    yield
    reset()


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Drop every env var the config layer reads and run from an empty cwd."""
    from faucet.runtime import config

    for name in list(config._ENV_FIELDS) + list(config._LEGACY_ENV_FIELDS) + ["FAUCET_CONFIG_PATH"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FAUCET_DOTENV_PATH", str(tmp_path / "missing.env"))
    monkeypatch.chdir(tmp_path)
    return tmp_path
