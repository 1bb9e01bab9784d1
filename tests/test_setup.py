import hashlib
import json
import signal
from pathlib import Path
from unittest.mock import patch

import pytest

from media_server_lxc import (
    GETTY_OVERRIDE_CONTENT,
    ContainerSpec,
    MediaServerSetup,
    PortMapping,
    ProvisionInterrupted,
    RestartPolicy,
    enable_locale,
    getty_service_name,
    main,
)


class TestFullRun:
    """End-to-end provisioning against a fake host"""

    def test_successful_run(self, config, host, commands):
        setup = MediaServerSetup(config)
        assert setup.run() == 0

        daemon = json.loads(Path(config.DOCKER_CONFIG_PATH).read_text())
        assert daemon == {"log-driver": "journald"}

        launches = commands.find("docker", "run")
        assert len(launches) == 8
        assert [cmd[3] for cmd in launches] == [
            "--name=portainer",
            "--name=watchtower",
            "--name=vscode",
            "--name=jellyfin",
            "--name=qbittorrent",
            "--name=sonarr",
            "--name=radarr",
            "--name=bazarr",
        ]

        assert commands.find("apt-get", "-y", "purge", "openssh-client", "openssh-server")
        assert commands.find("sh")
        assert (host / "root/.hushlogin").exists()
        assert not (host / "etc/motd").exists()
        assert not (host / "etc/update-motd.d/10-uname").exists()
        assert not (host / "setup.py").exists()
        assert all(r.ok for r in setup.runner.results)

    def test_command_order(self, config, commands):
        MediaServerSetup(config).run()
        programs = [cmd[:2] for cmd in commands.commands]
        assert programs[:5] == [
            ["locale-gen"],
            ["apt-get", "-y"],
            ["apt-get", "-y"],
            ["apt-get", "update"],
            ["apt-get", "-qqy"],
        ]
        assert programs[-2:] == [["systemctl", "daemon-reload"], ["systemctl", "restart"]]
        assert commands.commands[-1] == ["systemctl", "restart", "container-getty@1.service"]

    def test_network_commands_get_timeout(self, config, commands):
        MediaServerSetup(config).run()
        by_cmd = {tuple(cmd): kwargs for cmd, kwargs in commands.calls}
        assert by_cmd[("apt-get", "update")]["timeout"] == 60
        assert by_cmd[("locale-gen",)]["timeout"] is None
        for cmd, kwargs in commands.calls:
            if cmd[:2] == ["docker", "run"]:
                assert kwargs["timeout"] == 60

    def test_apt_runs_noninteractive(self, config, commands):
        MediaServerSetup(config).run()
        for cmd, kwargs in commands.calls:
            if cmd[0] == "apt-get":
                assert kwargs["env"]["DEBIAN_FRONTEND"] == "noninteractive"

    def test_failure_stops_the_run(self, config, host, commands):
        commands.fail("apt-get", "update", returncode=100)
        setup = MediaServerSetup(config)
        assert setup.run() == 100
        assert not commands.find("docker")
        assert not Path(config.DOCKER_CONFIG_PATH).exists()
        assert len(setup.runner.results) == 3
        assert (host / "setup.py").exists()

    def test_image_pull_failure_aborts(self, config, commands):
        commands.fail("docker", "run", "-d", "--name=jellyfin", returncode=125)
        setup = MediaServerSetup(config)
        assert setup.run() == 125
        names = [cmd[3] for cmd in commands.find("docker", "run")]
        assert names[-1] == "--name=jellyfin"
        assert "--name=sonarr" not in names

    def test_interrupt_keeps_script(self, config, host, commands):
        setup = MediaServerSetup(config)
        with patch.object(setup, "create_directories", side_effect=KeyboardInterrupt):
            assert setup.run() == 130
        assert (host / "setup.py").exists()
        assert not commands.find("docker", "run")

    def test_timeout_reported(self, config, commands):
        commands.timeout("apt-get", "-qqy", "upgrade")
        assert MediaServerSetup(config).run() == 124

    def test_port_collision_fails_preflight(self, config, commands):
        specs = [
            ContainerSpec("a", "img", ports=[PortMapping(80, 80)]),
            ContainerSpec("b", "img", ports=[PortMapping(80, 8080)]),
        ]
        setup = MediaServerSetup(config, specs)
        assert setup.run() == 2
        assert commands.calls == []

    def test_requires_root(self, config, commands):
        with patch("media_server_lxc.os.geteuid", return_value=1000):
            assert MediaServerSetup(config).run() == 2
        assert commands.calls == []

    def test_no_cleanup(self, config, host, commands):
        config.CLEANUP = False
        assert MediaServerSetup(config).run() == 0
        assert (host / "setup.py").exists()


class TestSteps:
    def test_directories_are_idempotent(self, config, host, commands):
        setup = MediaServerSetup(config)
        setup.create_directories()
        first = sorted(p for p in host.rglob("*") if p.is_dir())
        setup.create_directories()
        second = sorted(p for p in host.rglob("*") if p.is_dir())
        assert first == second
        for name in ("portainer", "vscode", "jellyfin", "sonarr", "radarr", "bazarr", "qbittorrent"):
            assert (host / "home/docker" / name).is_dir()
        for media in ("home/media/tvshows", "home/media/movies", "home/downloads"):
            assert (host / media).is_dir()
        assert (host / "var/run/docker.sock").is_file()

    def test_launch_requires_mount_directories(self, config, commands):
        setup = MediaServerSetup(config)
        with pytest.raises(Exception) as exc:
            setup.launch_container(setup.specs[0])
        assert "bind mount source missing" in str(exc.value)
        assert commands.calls == []

    def test_enable_locale(self, host):
        path = host / "etc/locale.gen"
        assert enable_locale(path, "en_US.UTF-8") is True
        assert path.read_text() == "en_US.UTF-8 UTF-8\n# nl_NL.UTF-8 UTF-8\n"
        assert enable_locale(path, "en_US.UTF-8") is False

    def test_customize_container(self, config, host, commands):
        MediaServerSetup(config).customize_container()
        override = Path(config.GETTY_OVERRIDE)
        assert override.read_text() == GETTY_OVERRIDE_CONTENT
        assert "--autologin root" in override.read_text()
        assert (host / "root/.hushlogin").read_text() == ""

    def test_customize_tolerates_missing_motd(self, config, host, commands):
        (host / "etc/motd").unlink()
        MediaServerSetup(config).customize_container()
        assert not (host / "etc/update-motd.d/10-uname").exists()

    def test_lenient_tweaks(self, config, host, commands):
        config.LENIENT_TWEAKS = True
        commands.fail("systemctl", "restart", returncode=5)
        setup = MediaServerSetup(config)
        assert setup.run() == 0
        assert setup.runner.results[-2].status == "warning"
        assert not (host / "setup.py").exists()

    def test_strict_tweaks(self, config, commands):
        commands.fail("systemctl", "restart", returncode=5)
        assert MediaServerSetup(config).run() == 5

    def test_cleanup_keeps_log(self, config, host, commands):
        MediaServerSetup(config).cleanup_container()
        assert (host / "var/log/media_server_lxc.log").exists()
        assert not (host / "var/log/apt").exists()
        assert list((host / "var/cache").iterdir()) == []
        assert list((host / "var/lib/apt/lists").iterdir()) == []
        assert not (host / "setup.py").exists()

    def test_getty_service_name(self):
        assert (
            getty_service_name(
                "/etc/systemd/system/container-getty@1.service.d/override.conf"
            )
            == "container-getty@1.service"
        )


class TestDockerInstall:
    def test_skips_when_installed(self, config, commands):
        commands.docker_installed = True
        MediaServerSetup(config).install_docker()
        assert commands.calls == []

    def test_checksum_match(self, config, commands):
        config.DOCKER_INSTALL_SHA256 = hashlib.sha256(commands.installer_body).hexdigest()
        MediaServerSetup(config).install_docker()
        assert commands.find("sh")

    def test_checksum_mismatch(self, config, commands):
        config.DOCKER_INSTALL_SHA256 = "0" * 64
        setup = MediaServerSetup(config)
        assert setup.run() == 2
        assert not commands.find("sh")
        assert "Checksum mismatch" in setup.runner.results[-1].context

    def test_installer_download_failure(self, config, commands):
        commands.fail("curl", returncode=6)
        assert MediaServerSetup(config).run() == 6

    def test_missing_docker_after_install(self, config, commands):
        with patch("media_server_lxc.shutil.which", return_value=None):
            setup = MediaServerSetup(config)
            assert setup.run() == 1
        assert "docker not found" in setup.runner.results[-1].context


class TestDryRun:
    def test_dry_run_touches_nothing(self, config, host, commands):
        config.DRY_RUN = True
        before = sorted(str(p) for p in host.rglob("*"))
        with patch("media_server_lxc.os.geteuid", return_value=1000):
            assert MediaServerSetup(config).run() == 0
        assert sorted(str(p) for p in host.rglob("*")) == before
        assert commands.calls == []

    def test_dry_run_creates_no_temp_file(self, config, commands):
        config.DRY_RUN = True
        with patch("media_server_lxc.tempfile.mkstemp") as mock_mkstemp:
            MediaServerSetup(config).install_docker()
        mock_mkstemp.assert_not_called()
        assert commands.calls == []


class TestMain:
    def test_dump_containers(self, capsys):
        assert main(["--dump-containers", "--timezone", "UTC"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert len(data) == 8
        assert data[2]["environment"] == {"TZ": "UTC"}
        assert data[0]["restart_policy"] == RestartPolicy.ALWAYS.value

    def test_list_containers(self, capsys):
        assert main(["--list-containers"]) == 0
        assert "jellyfin" in capsys.readouterr().out

    def test_bad_container_file(self, tmp_path):
        path = tmp_path / "containers.json"
        path.write_text("[]]")
        assert main(["--containers", str(path)]) == 2

    def test_mapping_with_non_object_body(self, tmp_path):
        path = tmp_path / "containers.json"
        path.write_text(json.dumps({"web": "nginx"}))
        assert main(["--containers", str(path)]) == 2

    def test_sigterm_outside_a_step(self, tmp_path):
        log_file = tmp_path / "setup.log"
        with patch("media_server_lxc.setup_signal_handlers"), patch(
            "media_server_lxc.setup_logger"
        ), patch.object(
            MediaServerSetup, "run", side_effect=ProvisionInterrupted(signal.SIGTERM)
        ):
            assert main(["--log-file", str(log_file), "--no-cleanup"]) == 143

    def test_ctrl_c_outside_a_step(self, tmp_path):
        log_file = tmp_path / "setup.log"
        with patch("media_server_lxc.setup_signal_handlers"), patch(
            "media_server_lxc.setup_logger"
        ), patch.object(
            MediaServerSetup, "run", side_effect=KeyboardInterrupt
        ):
            assert main(["--log-file", str(log_file)]) == 130
