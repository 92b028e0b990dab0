import subprocess
from pathlib import Path

import pytest

from patchloop.config_loader import PatchloopConfig


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-c", "user.name=tester", "-c", "user.email=tester@example.com", *args],
        cwd=repo, capture_output=True, text=True, check=True,
    )
    return result.stdout


FILES = {
    "pyproject.toml": '[project]\nname = "demo"\nversion = "0.1.0"\n',
    "README.md": "# demo\n\nA tiny project used in tests.\n",
    "src/config.py": (
        "import json\n\n\n"
        "def parse_config(path):\n"
        "    with open(path) as f:\n"
        "        return json.load(f)\n"
    ),
    "src/app.py": (
        "from config import parse_config\n\n\n"
        "class App:\n"
        "    def __init__(self, path):\n"
        "        self.config = parse_config(path)\n\n\n"
        "def main():\n"
        "    return App('config.json')\n"
    ),
    "src/util.py": "def clamp(value, low, high):\n    return max(low, min(value, high))\n",
}


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    for rel, text in FILES.items():
        path = repo / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    git(repo, "init", "-q")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def config() -> PatchloopConfig:
    cfg = PatchloopConfig()
    cfg.limits.generation_timeout = 5
    cfg.verifier.timeout = 30
    return cfg
