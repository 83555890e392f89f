import sys
from pathlib import Path

import pytest

ROOT_DIR = str(Path(__file__).resolve().parent.parent)


@pytest.fixture()
def root_on_path():
    """Temporarily add the repo root to sys.path for generator imports."""
    sys.path.insert(0, ROOT_DIR)
    yield
    sys.path.remove(ROOT_DIR)


@pytest.fixture()
def workspace(tmp_path):
    """A working directory laid out like the repo: fragments, template, output dir."""
    (tmp_path / "user-data").mkdir()
    (tmp_path / "templates").mkdir()
    (tmp_path / "json").mkdir()
    (tmp_path / "user-data" / "web_server-userdata.txt").write_text("echo A")
    (tmp_path / "user-data" / "socialworker-userdata.txt").write_text("echo B")
    (tmp_path / "templates" / "web_stack_autoscale.tmpl.erb").write_text(
        '{"web": "<%= web_server_bootstrap_script %>", '
        '"worker": "<%= socialworker_bootstrap_script %>"}\n'
    )
    return tmp_path
