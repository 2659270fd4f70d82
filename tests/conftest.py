from __future__ import annotations

from pathlib import Path

import pytest

from mcpcaller.config import initialize_project_config, resolve_project_config_root


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    workspace = tmp_path / "workspace"
    workspace.mkdir(parents=True, exist_ok=True)

    monkeypatch.chdir(workspace)
    monkeypatch.delenv("PORT", raising=False)

    return {
        "workspace": workspace,
        "config_root": resolve_project_config_root(workspace),
    }


@pytest.fixture
def initialized_env(isolated_env):
    initialize_project_config(workspace_dir=isolated_env["workspace"])
    return isolated_env
