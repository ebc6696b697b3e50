from dotenv import load_dotenv
load_dotenv()  # ensures a local GITHUB_TOKEN / PROFILER_API_TOKEN are visible to pytest
import json
import warnings

import pytest

warnings.filterwarnings(
    "ignore",
    message=r"on_event is deprecated, use lifespan event handlers instead\.",
    category=DeprecationWarning,
    module=r"fastapi\..*",
)


@pytest.fixture
def profilers_file(tmp_path, monkeypatch):
    """Point PROFILERS_FILE at a temp allow-list; returns a writer for its contents."""
    path = tmp_path / "profilers.json"

    def write(logins):
        path.write_text(json.dumps(logins))
        monkeypatch.setenv("PROFILERS_FILE", str(path))
        return path

    return write
