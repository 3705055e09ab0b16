"""
Pytest configuration and shared fixtures.

Functional tests run real subprocesses against small shell scripts that
stand in for ``clickhouse`` and ``docker``.
"""

import stat
import sys
from pathlib import Path

import pytest


# Add app directory to path
APP_DIR = Path(__file__).parent.parent / "app"
sys.path.insert(0, str(APP_DIR))


FAKE_CLICKHOUSE = """#!/bin/sh
# Stand-in for "clickhouse client"
if [ "$1" = "client" ] && [ "$2" = "--version" ]; then
    echo "ClickHouse client version 0.0.0 (fake)"
    exit 0
fi
query=""
for arg in "$@"; do
    case "$arg" in
        --query=*) query="${arg#--query=}" ;;
    esac
done
case "$query" in
    echo-input) cat ;;
    fail) printf 'progress line\\nError: syntax error\\n' >&2; exit 2 ;;
    noisy) printf 'progress line\\nError: syntax error\\n' >&2; echo ok ;;
    silent-fail) exit 3 ;;
    sleep) echo started; exec sleep 30 ;;
    args) for arg in "$@"; do echo "$arg"; done ;;
    big) head -c 1000000 /dev/zero ;;
    stderr-flood) head -c 2000000 /dev/zero >&2; echo done ;;
    stderr-hang) head -c 2000000 /dev/zero >&2; exec sleep 30 ;;
    *) echo "$query" ;;
esac
"""

# Records every invocation, one line per call, in $FAKE_DOCKER_LOG.
# "Containers" are marker files in $FAKE_DOCKER_STATE.
FAKE_DOCKER = """#!/bin/sh
echo "$*" >> "$FAKE_DOCKER_LOG"
case "$1" in
    --version) exit 0 ;;
    exec)
        [ -f "$FAKE_DOCKER_STATE/$3" ] || exit 1
        exit 0 ;;
    run)
        name=""
        prev=""
        for arg in "$@"; do
            [ "$prev" = "--name" ] && name="$arg"
            prev="$arg"
        done
        if [ -n "$name" ]; then
            touch "$FAKE_DOCKER_STATE/$name"
        fi
        exit 0 ;;
esac
exit 1
"""


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test"
    )


def write_script(path: Path, content: str) -> Path:
    """Write an executable script."""
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    """Host work directory for staged files."""
    directory = tmp_path / "work"
    directory.mkdir()
    return directory


@pytest.fixture
def fake_clickhouse(tmp_path: Path) -> Path:
    """Executable pretending to be the clickhouse binary."""
    return write_script(tmp_path / "clickhouse", FAKE_CLICKHOUSE)


@pytest.fixture
def fake_docker(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """
    Executable pretending to be the docker CLI.

    Returns:
        (script path, invocation log path, container state directory)
    """
    log = tmp_path / "docker.log"
    state = tmp_path / "containers"
    state.mkdir()
    monkeypatch.setenv("FAKE_DOCKER_LOG", str(log))
    monkeypatch.setenv("FAKE_DOCKER_STATE", str(state))
    return write_script(tmp_path / "docker", FAKE_DOCKER), log, state


@pytest.fixture
def make_script(tmp_path: Path):
    """Factory writing an executable shell script into tmp_path."""
    def make(name: str, body: str) -> Path:
        return write_script(tmp_path / name, "#!/bin/sh\n" + body)
    return make
