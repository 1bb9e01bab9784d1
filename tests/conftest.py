import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from media_server_lxc import Config


class FakeCommands:
    """Stand-in for subprocess.run that records every command."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.timeouts = set()
        self.docker_installed = False
        self.installer_body = b"#!/bin/sh\necho installing docker\n"

    def fail(self, *prefix, returncode=1, stderr=""):
        self.failures[tuple(prefix)] = (returncode, stderr)

    def timeout(self, *prefix):
        self.timeouts.add(tuple(prefix))

    def _matches(self, cmd, prefix):
        return tuple(cmd[: len(prefix)]) == prefix

    def __call__(self, cmd, check=True, **kwargs):
        cmd = list(cmd)
        self.calls.append((cmd, kwargs))
        for prefix in self.timeouts:
            if self._matches(cmd, prefix):
                raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))
        for prefix, (returncode, stderr) in self.failures.items():
            if self._matches(cmd, prefix):
                if check:
                    raise subprocess.CalledProcessError(returncode, cmd, stderr=stderr)
                return subprocess.CompletedProcess(cmd, returncode, "", stderr)
        if cmd[0] == "curl" and "-o" in cmd:
            Path(cmd[cmd.index("-o") + 1]).write_bytes(self.installer_body)
        if cmd[0] == "sh":
            self.docker_installed = True
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def which(self, name):
        if name == "docker" and self.docker_installed:
            return "/usr/bin/docker"
        return None

    @property
    def commands(self):
        return [cmd for cmd, _ in self.calls]

    def find(self, *prefix):
        return [cmd for cmd in self.commands if self._matches(cmd, prefix)]


@pytest.fixture
def commands():
    fake = FakeCommands()
    with patch("media_server_lxc.subprocess.run", side_effect=fake), patch(
        "media_server_lxc.shutil.which", side_effect=fake.which
    ), patch("media_server_lxc.os.geteuid", return_value=0):
        yield fake


@pytest.fixture
def host(tmp_path):
    """A fake container filesystem rooted in tmp_path."""
    root = tmp_path / "host"
    files = {
        "etc/locale.gen": "# en_US.UTF-8 UTF-8\n# nl_NL.UTF-8 UTF-8\n",
        "etc/motd": "Welcome to Debian\n",
        "etc/update-motd.d/10-uname": "#!/bin/sh\nuname -snrvm\n",
        "setup.py": "#!/usr/bin/env python3\n",
        "var/run/docker.sock": "",
        "var/cache/apt/pkgcache.bin": "cache",
        "var/log/apt/history.log": "history",
        "var/log/media_server_lxc.log": "provisioning log",
        "var/lib/apt/lists/deb.debian.org_dists": "lists",
    }
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    (root / "root").mkdir()
    return root


@pytest.fixture
def config(host):
    return Config(
        LOG_FILE=str(host / "var/log/media_server_lxc.log"),
        LANG="en_US.UTF-8",
        LOCALE_GEN=str(host / "etc/locale.gen"),
        DOCKER_CONFIG_PATH=str(host / "etc/docker/daemon.json"),
        DOCKER_SOCKET=str(host / "var/run/docker.sock"),
        DOCKER_DATA_DIR=str(host / "home/docker"),
        WORKSPACE_DIR=str(host / "home"),
        MEDIA_TVSHOWS_PATH=str(host / "home/media/tvshows"),
        MEDIA_MOVIES_PATH=str(host / "home/media/movies"),
        MEDIA_DOWNLOADS_PATH=str(host / "home/downloads"),
        MOTD_FILES=[
            str(host / "etc/motd"),
            str(host / "etc/update-motd.d/10-uname"),
        ],
        HUSHLOGIN=str(host / "root/.hushlogin"),
        GETTY_OVERRIDE=str(
            host / "etc/systemd/system/container-getty@1.service.d/override.conf"
        ),
        SCRIPT_PATH=str(host / "setup.py"),
        CLEANUP_DIRS=[
            str(host / "var/cache"),
            str(host / "var/log"),
            str(host / "var/lib/apt/lists"),
        ],
        NETWORK_TIMEOUT=60,
    )
