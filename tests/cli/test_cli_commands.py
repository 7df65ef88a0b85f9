import os
import pytest
from click.testing import CliRunner
from rbe.cas import *
from rbe.cas.stores import MemoryStorage
from rbe.cli.cli import cli
from rbe.runtime.remote_execution_server import start_server

@pytest.fixture
def address(tmp_path):
    server, port = start_server(MemoryStorage(), work_dir=str(tmp_path / "work"), port="0")
    yield f"localhost:{port}"
    server.stop(None)

def create_project(tmp_path) -> str:
    project = tmp_path / "project"
    os.makedirs(project / "src")
    (project / "src" / "hello.txt").write_text("hello remote\n")
    (project / "action.toml").write_text('''
[action]
inputs = ["src"]
argv = ["sh", "-c", "cat src/hello.txt; cp src/hello.txt copy.txt; exit 3"]
output_files = ["copy.txt"]

[action.env]
PATH = "/usr/bin:/bin"
''')
    return str(project)

def test_push_and_cat(tmp_path, address):
    project = create_project(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["-a", address, "push", "--root", project, os.path.join(project, "src")])
    assert result.exit_code == 0, result.output
    root_digest = to_digest(result.output.strip().splitlines()[-1])

    result = runner.invoke(cli, ["-a", address, "cat", to_digest_str(root_digest)])
    assert result.exit_code == 0, result.output
    root = bytes_to_directory(result.stdout_bytes)
    assert list(root.keys()) == ["src"]

    hello_digest = get_digest(b"hello remote\n")
    result = runner.invoke(cli, ["-a", address, "cat", to_digest_str(hello_digest)])
    assert result.exit_code == 0
    assert result.stdout_bytes == b"hello remote\n"

def test_cat_invalid_digest(address):
    result = CliRunner().invoke(cli, ["-a", address, "cat", "not-a-digest"])
    assert result.exit_code != 0

def test_run(tmp_path, address):
    project = create_project(tmp_path)
    result = CliRunner().invoke(cli, ["-a", address, "run", "--file", os.path.join(project, "action.toml")])
    # the exit code of the action is passed through
    assert result.exit_code == 3, result.output
    assert "hello remote" in result.output
    copy_digest = get_digest(b"hello remote\n")
    assert f"output file: copy.txt {to_digest_str(copy_digest)}" in result.output

def test_run_missing_file(tmp_path, address):
    result = CliRunner().invoke(cli, ["-a", address, "run", "--file", str(tmp_path / "nope.toml")])
    assert result.exit_code != 0
    assert "does not exist" in result.output
