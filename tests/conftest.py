"""Shared pytest configuration: markers, execution ordering, and run fixtures."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from rpi_orchestrator.schemas import RUN_DIR


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that spawn real tools")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture
def run_dir(tmp_path: Path) -> Path:
    """``<tmp>/.agents/rpi``, created."""
    path = tmp_path / RUN_DIR
    path.mkdir(parents=True)
    return path


def init_git_repo(repo: Path) -> Path:
    """Create a git repo with one commit on ``main``."""
    repo.mkdir(parents=True, exist_ok=True)

    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)

    git("init")
    git("config", "user.name", "Test User")
    git("config", "user.email", "test@example.com")
    git("checkout", "-B", "main")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    git("add", "README.md")
    git("commit", "-m", "init")
    return repo


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    return init_git_repo(tmp_path / "repo")
