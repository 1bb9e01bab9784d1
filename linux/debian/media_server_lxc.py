#!/usr/bin/env python3

# ----------------------------------------------------------------
# Dependencies and Imports
# ----------------------------------------------------------------
import argparse
import hashlib
import json
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import pyfiglet
from rich import box
from rich.align import Align
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme


# ----------------------------------------------------------------
# Nord-Themed Colors and Theme Setup
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette definitions for consistent UI styling."""

    POLAR_NIGHT_1: str = "#2E3440"
    POLAR_NIGHT_3: str = "#434C5E"
    POLAR_NIGHT_4: str = "#4C566A"
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    SNOW_STORM_3: str = "#ECEFF4"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        """Returns a gradient using the frost color palette."""
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[:steps]


nord_theme = Theme(
    {
        "banner": f"bold {NordColors.FROST_2}",
        "header": f"bold {NordColors.FROST_2}",
        "info": NordColors.GREEN,
        "warning": NordColors.YELLOW,
        "error": NordColors.RED,
        "debug": NordColors.POLAR_NIGHT_3,
        "success": NordColors.GREEN,
    }
)

console = Console(theme=nord_theme)
logger = logging.getLogger("media_server_lxc")

# ----------------------------------------------------------------
# Global Configuration
# ----------------------------------------------------------------
APP_NAME: str = "Media Server LXC"
VERSION: str = "1.0.0"
DEFAULT_NETWORK_TIMEOUT: int = 1800  # apt, installer download and image pulls

EXIT_VALIDATION: int = 2
EXIT_TIMEOUT: int = 124
EXIT_INTERRUPTED: int = 130
INTERRUPT_REASON: str = "Script interrupted."

APT_ENV: Dict[str, str] = {"DEBIAN_FRONTEND": "noninteractive"}

GETTY_OVERRIDE_CONTENT: str = """[Service]
ExecStart=
ExecStart=-/sbin/agetty --autologin root --noclear --keep-baud tty%I 115200,38400,9600 $TERM
"""

CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
WATCHTOWER_LABEL: str = "com.centurylinklabs.watchtower.enable"


@dataclass
class Config:
    """Configuration for the media server container setup."""

    LOG_FILE: str = "/var/log/media_server_lxc.log"
    LANG: str = field(default_factory=lambda: os.environ.get("LANG", "en_US.UTF-8"))
    TIMEZONE: str = "Europe/Amsterdam"
    LOCALE_GEN: str = "/etc/locale.gen"
    SSH_PACKAGES: List[str] = field(
        default_factory=lambda: ["openssh-client", "openssh-server"]
    )
    PREREQUISITES: List[str] = field(default_factory=lambda: ["curl"])

    # Docker engine
    DOCKER_CONFIG_PATH: str = "/etc/docker/daemon.json"
    DOCKER_DAEMON_CONFIG: Dict[str, Any] = field(
        default_factory=lambda: {"log-driver": "journald"}
    )
    DOCKER_INSTALL_URL: str = "https://get.docker.com"
    DOCKER_INSTALL_SHA256: Optional[str] = None
    DOCKER_SOCKET: str = "/var/run/docker.sock"

    # Bind mount roots
    DOCKER_DATA_DIR: str = "/home/docker"
    WORKSPACE_DIR: str = "/home"
    MEDIA_TVSHOWS_PATH: str = "/home/media/tvshows"
    MEDIA_MOVIES_PATH: str = "/home/media/movies"
    MEDIA_DOWNLOADS_PATH: str = "/home/downloads"

    # Login tweaks
    MOTD_FILES: List[str] = field(
        default_factory=lambda: ["/etc/motd", "/etc/update-motd.d/10-uname"]
    )
    HUSHLOGIN: str = field(default_factory=lambda: str(Path.home() / ".hushlogin"))
    GETTY_OVERRIDE: str = (
        "/etc/systemd/system/container-getty@1.service.d/override.conf"
    )

    # Cleanup
    SCRIPT_PATH: str = field(default_factory=lambda: os.path.abspath(sys.argv[0]))
    CLEANUP_DIRS: List[str] = field(
        default_factory=lambda: ["/var/cache", "/var/log", "/var/lib/apt/lists"]
    )

    NETWORK_TIMEOUT: Optional[int] = DEFAULT_NETWORK_TIMEOUT
    LENIENT_TWEAKS: bool = False
    CLEANUP: bool = True
    DRY_RUN: bool = False

    @property
    def media_directories(self) -> List[Path]:
        return [
            Path(self.MEDIA_TVSHOWS_PATH),
            Path(self.MEDIA_MOVIES_PATH),
            Path(self.MEDIA_DOWNLOADS_PATH),
        ]


# ----------------------------------------------------------------
# Container Specifications
# ----------------------------------------------------------------
class RestartPolicy(str, Enum):
    ALWAYS = "always"
    UNLESS_STOPPED = "unless-stopped"
    NONE = "none"

    @classmethod
    def _missing_(cls, value: object) -> Optional["RestartPolicy"]:
        # docker spells "none" as "no"
        if value in ("no", "", None):
            return cls.NONE
        return None


@dataclass(frozen=True)
class PortMapping:
    host_port: int
    container_port: int
    protocol: str = "tcp"

    @classmethod
    def parse(cls, value: Union[str, Dict[str, Any]]) -> "PortMapping":
        """Parse ``"8080:80"``, ``"7359:7359/udp"`` or a mapping."""
        if isinstance(value, dict):
            return cls(
                int(value["host_port"]),
                int(value["container_port"]),
                str(value.get("protocol", "tcp")).lower(),
            )
        ports, _, protocol = str(value).partition("/")
        host, sep, container = ports.partition(":")
        if not sep:
            raise ValueError(f"Invalid port mapping: {value!r}")
        return cls(int(host), int(container), (protocol or "tcp").lower())

    def to_flag(self) -> str:
        mapping = f"{self.host_port}:{self.container_port}"
        return mapping if self.protocol == "tcp" else f"{mapping}/{self.protocol}"


@dataclass(frozen=True)
class VolumeMount:
    host_path: str
    container_path: str
    create: bool = True

    @classmethod
    def parse(cls, value: Union[str, Dict[str, Any]]) -> "VolumeMount":
        if isinstance(value, dict):
            return cls(
                str(value["host_path"]),
                str(value["container_path"]),
                bool(value.get("create", True)),
            )
        host, sep, container = str(value).partition(":")
        if not sep:
            raise ValueError(f"Invalid volume mount: {value!r}")
        return cls(host, container)

    def to_flag(self) -> str:
        return f"{self.host_path}:{self.container_path}"


@dataclass
class ContainerSpec:
    """Launch parameters of a single application container."""

    name: str
    image: str
    restart_policy: RestartPolicy = RestartPolicy.NONE
    ports: List[PortMapping] = field(default_factory=list)
    volumes: List[VolumeMount] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    extra_args: List[str] = field(default_factory=list)
    command: List[str] = field(default_factory=list)
    display_name: Optional[str] = None

    @property
    def title(self) -> str:
        return self.display_name or self.name

    def to_docker_args(self) -> List[str]:
        """Build the ``docker run`` argument vector for this container."""
        args = ["docker", "run", "-d", f"--name={self.name}"]
        if self.restart_policy is not RestartPolicy.NONE:
            args.append(f"--restart={self.restart_policy.value}")
        for key, value in self.environment.items():
            args += ["-e", f"{key}={value}"]
        for port in self.ports:
            args += ["-p", port.to_flag()]
        for volume in self.volumes:
            args += ["-v", volume.to_flag()]
        for key, value in self.labels.items():
            args += ["--label", f"{key}={value}"]
        args += self.extra_args
        args.append(self.image)
        args += self.command
        return args

    def host_directories(self) -> List[Path]:
        return [Path(v.host_path) for v in self.volumes if v.create]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "image": self.image,
            "restart_policy": self.restart_policy.value,
            "ports": [p.to_flag() for p in self.ports],
            "volumes": [asdict(v) for v in self.volumes],
            "environment": dict(self.environment),
            "labels": dict(self.labels),
            "extra_args": list(self.extra_args),
            "command": list(self.command),
            "display_name": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContainerSpec":
        return cls(
            name=str(data["name"]),
            image=str(data["image"]),
            restart_policy=RestartPolicy(data.get("restart_policy", "none")),
            ports=[PortMapping.parse(p) for p in data.get("ports", [])],
            volumes=[VolumeMount.parse(v) for v in data.get("volumes", [])],
            environment={str(k): str(v) for k, v in data.get("environment", {}).items()},
            labels={str(k): str(v) for k, v in data.get("labels", {}).items()},
            extra_args=[str(a) for a in data.get("extra_args", [])],
            command=[str(a) for a in data.get("command", [])],
            display_name=data.get("display_name"),
        )


def default_container_specs(config: Config) -> List[ContainerSpec]:
    """The stock media server stack, in launch order."""
    data = Path(config.DOCKER_DATA_DIR)
    tz = {"TZ": config.TIMEZONE}
    socket = VolumeMount(config.DOCKER_SOCKET, "/var/run/docker.sock", create=False)
    tvshows = config.MEDIA_TVSHOWS_PATH
    movies = config.MEDIA_MOVIES_PATH
    downloads = config.MEDIA_DOWNLOADS_PATH

    return [
        ContainerSpec(
            name="portainer",
            image="portainer/portainer-ce",
            restart_policy=RestartPolicy.ALWAYS,
            ports=[PortMapping(8000, 8000), PortMapping(9000, 9000)],
            volumes=[socket, VolumeMount(str(data / "portainer"), "/data")],
            labels={WATCHTOWER_LABEL: "true"},
            display_name="Portainer",
        ),
        ContainerSpec(
            name="watchtower",
            image="containrrr/watchtower",
            volumes=[socket],
            command=["--cleanup", "--label-enable"],
            display_name="Watchtower",
        ),
        ContainerSpec(
            name="vscode",
            image="ghcr.io/linuxserver/code-server",
            restart_policy=RestartPolicy.UNLESS_STOPPED,
            ports=[PortMapping(8443, 8443)],
            volumes=[
                VolumeMount(str(data / "vscode"), "/config"),
                VolumeMount(config.WORKSPACE_DIR, "/config/workspace/Server"),
            ],
            environment=dict(tz),
            display_name="VSCode",
        ),
        ContainerSpec(
            name="jellyfin",
            image="ghcr.io/linuxserver/jellyfin",
            restart_policy=RestartPolicy.UNLESS_STOPPED,
            ports=[
                PortMapping(8096, 8096),
                PortMapping(8920, 8920),
                PortMapping(7359, 7359, "udp"),
                PortMapping(1900, 1900, "udp"),
            ],
            volumes=[
                VolumeMount(str(data / "jellyfin"), "/config"),
                VolumeMount(tvshows, "/data/tvshows"),
                VolumeMount(movies, "/data/movies"),
            ],
            environment=dict(tz),
            display_name="Jellyfin",
        ),
        ContainerSpec(
            name="qbittorrent",
            image="ghcr.io/linuxserver/qbittorrent",
            restart_policy=RestartPolicy.UNLESS_STOPPED,
            ports=[
                PortMapping(6881, 6881),
                PortMapping(6881, 6881, "udp"),
                PortMapping(8080, 8080),
            ],
            volumes=[
                VolumeMount(str(data / "qbittorrent"), "/config"),
                VolumeMount(downloads, "/downloads"),
            ],
            environment={**tz, "WEBUI_PORT": "8080"},
            display_name="qbittorrent",
        ),
        ContainerSpec(
            name="sonarr",
            image="ghcr.io/linuxserver/sonarr",
            restart_policy=RestartPolicy.UNLESS_STOPPED,
            ports=[PortMapping(8989, 8989)],
            volumes=[
                VolumeMount(str(data / "sonarr"), "/config"),
                VolumeMount(tvshows, "/tv"),
                VolumeMount(downloads, "/downloads"),
            ],
            environment=dict(tz),
            display_name="Sonarr",
        ),
        ContainerSpec(
            name="radarr",
            image="ghcr.io/linuxserver/radarr",
            restart_policy=RestartPolicy.UNLESS_STOPPED,
            ports=[PortMapping(7878, 7878)],
            volumes=[
                VolumeMount(str(data / "radarr"), "/config"),
                VolumeMount(movies, "/movies"),
                VolumeMount(downloads, "/downloads"),
            ],
            environment=dict(tz),
            display_name="Radarr",
        ),
        ContainerSpec(
            name="bazarr",
            image="ghcr.io/linuxserver/bazarr",
            restart_policy=RestartPolicy.UNLESS_STOPPED,
            ports=[PortMapping(6767, 6767)],
            volumes=[
                VolumeMount(str(data / "bazarr"), "/config"),
                VolumeMount(movies, "/movies"),
                VolumeMount(tvshows, "/tv"),
            ],
            environment=dict(tz),
            display_name="Bazarr",
        ),
    ]


# ----------------------------------------------------------------
# Step Results and Errors
# ----------------------------------------------------------------
class ErrorKind(str, Enum):
    COMMAND = "command"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    INTERRUPTED = "interrupted"


class StepError(Exception):
    """A failed provisioning step, with the exit code to report."""

    def __init__(
        self, message: str, kind: ErrorKind = ErrorKind.COMMAND, exit_code: int = 1
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.exit_code = exit_code

    @classmethod
    def from_exception(cls, exc: BaseException) -> "StepError":
        if isinstance(exc, StepError):
            return exc
        if isinstance(exc, subprocess.TimeoutExpired):
            return cls(
                f"Command timed out after {exc.timeout}s: {format_command(exc.cmd)}",
                ErrorKind.TIMEOUT,
                EXIT_TIMEOUT,
            )
        if isinstance(exc, subprocess.CalledProcessError):
            message = f"Command failed: {format_command(exc.cmd)}"
            stderr = exc.stderr.strip() if isinstance(exc.stderr, str) else ""
            if stderr:
                message += f" ({stderr.splitlines()[-1]})"
            code = exc.returncode
            # negative return codes mean the child died from a signal
            return cls(message, ErrorKind.COMMAND, 128 - code if code < 0 else code)
        if isinstance(exc, OSError):
            return cls(str(exc), ErrorKind.COMMAND, exc.errno or 1)
        return cls(str(exc), ErrorKind.COMMAND, 1)


class ProvisionInterrupted(Exception):
    def __init__(self, signum: int = signal.SIGINT) -> None:
        super().__init__(INTERRUPT_REASON)
        self.signum = signum


@dataclass
class StepResult:
    label: str
    index: int
    ok: bool
    exit_code: int = 0
    kind: Optional[ErrorKind] = None
    context: str = ""
    elapsed: float = 0.0
    fatal: bool = True

    @classmethod
    def success(cls, label: str, index: int, elapsed: float) -> "StepResult":
        return cls(label=label, index=index, ok=True, elapsed=elapsed)

    @classmethod
    def failure(
        cls,
        label: str,
        index: int,
        error: StepError,
        elapsed: float = 0.0,
        fatal: bool = True,
    ) -> "StepResult":
        return cls(
            label=label,
            index=index,
            ok=False,
            exit_code=error.exit_code,
            kind=error.kind,
            context=str(error),
            elapsed=elapsed,
            fatal=fatal,
        )

    @property
    def status(self) -> str:
        if self.ok:
            return "success"
        return "failed" if self.fatal else "warning"


@dataclass
class Step:
    label: str
    action: Callable[[], Any]
    fatal: bool = True


# ----------------------------------------------------------------
# UI Helper Functions
# ----------------------------------------------------------------
def create_header(title: str = APP_NAME) -> Panel:
    """
    Generate an ASCII art header with a frost gradient using Pyfiglet.
    Falls back through smaller fonts on narrow terminals.
    """
    term_width, _ = shutil.get_terminal_size((80, 24))
    fonts: List[str] = ["slant", "small", "mini"]
    if term_width < 60:
        fonts = fonts[1:]

    ascii_art = ""
    for font in fonts:
        try:
            fig = pyfiglet.Figlet(font=font, width=min(term_width - 10, 120))
            ascii_art = fig.renderText(title)
        except pyfiglet.FigletError:
            continue
        if ascii_art.strip():
            break

    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()]
    colors = NordColors.get_frost_gradient(len(ascii_lines))
    combined_text = Text()
    for i, line in enumerate(ascii_lines):
        combined_text.append(Text(line, style=f"bold {colors[i % len(colors)]}"))
        if i < len(ascii_lines) - 1:
            combined_text.append("\n")

    return Panel(
        Align.center(combined_text),
        border_style=NordColors.FROST_1,
        padding=(1, 2),
        title=Text(f"{APP_NAME} v{VERSION}", style=f"bold {NordColors.SNOW_STORM_2}"),
        title_align="right",
        subtitle=Text("Container Host Provisioning", style=f"bold {NordColors.SNOW_STORM_1}"),
        subtitle_align="center",
        box=box.ROUNDED,
    )


def print_message(
    text: str, style: str = NordColors.FROST_2, prefix: str = "•"
) -> None:
    """Print a styled message with a prefix."""
    console.print(f"[{style}]{prefix} {escape(text)}[/{style}]")


def print_success(message: str) -> None:
    print_message(message, NordColors.GREEN, "✓")


def print_warning(message: str) -> None:
    print_message(message, NordColors.YELLOW, "⚠")


def print_error(message: str) -> None:
    print_message(message, NordColors.RED, "✗")


def print_step(message: str) -> None:
    print_message(message, NordColors.FROST_2, "→")


def print_fatal(result: StepResult) -> None:
    """Print the single error line for a fatal step failure."""
    console.print(
        Text.assemble(
            ("[ERROR:LXC] ", f"bold {NordColors.RED}"),
            (f"{result.exit_code}@{result.index} ", NordColors.YELLOW),
            (result.context or "Unknown failure occurred.", NordColors.SNOW_STORM_3),
        )
    )


def print_status_report(results: Sequence[StepResult]) -> None:
    """Print a status report table for every step that ran."""
    table = Table(title="Setup Status Report", style="banner", box=box.ROUNDED)
    table.add_column("#", style="header", justify="right")
    table.add_column("Step", style="header")
    table.add_column("Status", style="info")
    table.add_column("Message", style="info")

    for result in results:
        status_color = {
            "success": "success",
            "warning": "warning",
            "failed": "error",
        }.get(result.status, "info")
        message = (
            f"Completed in {result.elapsed:.2f}s" if result.ok else result.context
        )
        table.add_row(
            str(result.index),
            result.label,
            f"[{status_color}]{result.status.upper()}[/{status_color}]",
            escape(message),
        )

    console.print(
        Panel(
            table,
            title="[banner]Media Server Setup Status[/banner]",
            border_style=NordColors.FROST_3,
            box=box.ROUNDED,
        )
    )


def print_container_table(specs: Sequence[ContainerSpec]) -> None:
    table = Table(title="Containers", style="banner", box=box.ROUNDED)
    table.add_column("Name", style="header")
    table.add_column("Image", style="info")
    table.add_column("Restart", style="info")
    table.add_column("Ports", style="info")
    for spec in specs:
        table.add_row(
            spec.name,
            spec.image,
            spec.restart_policy.value,
            ", ".join(p.to_flag() for p in spec.ports) or "-",
        )
    console.print(table)


# ----------------------------------------------------------------
# Logger Setup
# ----------------------------------------------------------------
def setup_logger(log_file: Union[str, Path]) -> logging.Logger:
    """Set up the console and file handlers of the setup logger."""
    logger.setLevel(logging.DEBUG)
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()

    console_handler = RichHandler(console=console, rich_tracebacks=True)
    console_handler.setLevel(logging.INFO)
    logger.addHandler(console_handler)

    log_file = Path(log_file)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"File logging disabled, cannot open {log_file}: {e}")
        return logger

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(
            "[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"
        )
    )
    logger.addHandler(file_handler)

    try:
        os.chmod(str(log_file), 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_file}: {e}")

    return logger


# ----------------------------------------------------------------
# Signal Handling
# ----------------------------------------------------------------
def signal_handler(signum: int, frame: Optional[Any]) -> None:
    logger.debug(f"Received {signal.Signals(signum).name}")
    raise ProvisionInterrupted(signum)


def setup_signal_handlers() -> None:
    """Route SIGTERM and SIGHUP through the same path as Ctrl-C."""
    for sig in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(sig, signal_handler)


# ----------------------------------------------------------------
# Command Execution Utilities
# ----------------------------------------------------------------
def format_command(cmd: Union[Sequence[str], str]) -> str:
    return cmd if isinstance(cmd, str) else " ".join(str(c) for c in cmd)


def run_command(
    cmd: List[str],
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[int] = None,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    """
    Run a command with stdout suppressed.

    stderr is always captured so a failing command can be reported.
    """
    cmd_str = format_command(cmd)
    logger.debug(f"Executing: {cmd_str}")
    try:
        return subprocess.run(
            cmd,
            check=check,
            text=True,
            errors="replace",
            stdout=subprocess.PIPE if capture_output else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            timeout=timeout,
            env={**os.environ, **env} if env else None,
        )
    except subprocess.CalledProcessError as e:
        logger.debug(f"Command failed: {cmd_str} with exit code {e.returncode}")
        logger.debug(f"Error: {e.stderr or 'N/A'}")
        raise
    except subprocess.TimeoutExpired:
        logger.debug(f"Command timed out after {timeout} seconds: {cmd_str}")
        raise


def command_exists(cmd: str) -> bool:
    return shutil.which(cmd) is not None


def sha256sum(path: Union[str, Path]) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def enable_locale(locale_gen: Union[str, Path], lang: str) -> bool:
    """
    Uncomment every line of locale.gen that mentions ``lang``.

    Returns True when the file changed.
    """
    path = Path(locale_gen)
    lines = path.read_text().splitlines(keepends=True)
    changed = False
    for i, line in enumerate(lines):
        if lang in line and line.startswith("# "):
            lines[i] = line[2:]
            changed = True
    if changed:
        path.write_text("".join(lines))
    return changed


def getty_service_name(override: Union[str, Path]) -> str:
    """``.../container-getty@1.service.d/override.conf`` -> ``container-getty@1.service``"""
    unit_dir = Path(override).parent.name
    return unit_dir[: -len(".d")] if unit_dir.endswith(".d") else unit_dir


# ----------------------------------------------------------------
# Configuration Loading and Validation
# ----------------------------------------------------------------
def load_container_specs(path: Union[str, Path]) -> List[ContainerSpec]:
    """
    Load container specs from a JSON file.

    The file holds either a list of spec objects or an object mapping each
    container name to its spec.
    """
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise StepError(
            f"Cannot read container config {path}: {e}",
            ErrorKind.VALIDATION,
            EXIT_VALIDATION,
        ) from e

    if isinstance(data, dict):
        entries = list(data.items())
    elif isinstance(data, list):
        entries = [(None, entry) for entry in data]
    else:
        raise StepError(
            f"Container config {path} must be a JSON list or object",
            ErrorKind.VALIDATION,
            EXIT_VALIDATION,
        )

    specs = []
    for i, (name, entry) in enumerate(entries):
        label = repr(name) if name is not None else f"#{i + 1}"
        try:
            if not isinstance(entry, dict):
                raise TypeError(f"expected an object, got {type(entry).__name__}")
            if name is not None:
                entry = {**entry, "name": name}
            specs.append(ContainerSpec.from_dict(entry))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StepError(
                f"Invalid container entry {label} in {path}: {e!r}",
                ErrorKind.VALIDATION,
                EXIT_VALIDATION,
            ) from e
    return specs


def validate_specs(specs: Sequence[ContainerSpec]) -> List[str]:
    """Return every problem found in the container list."""
    problems: List[str] = []
    seen_names: Dict[str, int] = {}
    published: Dict[Tuple[int, str], str] = {}

    for spec in specs:
        if not CONTAINER_NAME_RE.match(spec.name):
            problems.append(f"Invalid container name: {spec.name!r}")
        seen_names[spec.name] = seen_names.get(spec.name, 0) + 1
        if not spec.image:
            problems.append(f"{spec.name}: image is empty")

        for port in spec.ports:
            if port.protocol not in ("tcp", "udp", "sctp"):
                problems.append(f"{spec.name}: unknown protocol {port.protocol!r}")
            for number in (port.host_port, port.container_port):
                if not 1 <= number <= 65535:
                    problems.append(f"{spec.name}: port {number} out of range")
            key = (port.host_port, port.protocol)
            owner = published.get(key)
            if owner is not None:
                problems.append(
                    f"Host port {port.host_port}/{port.protocol} published by both "
                    f"{owner} and {spec.name}"
                )
            else:
                published[key] = spec.name

        for volume in spec.volumes:
            if not os.path.isabs(volume.host_path):
                problems.append(f"{spec.name}: host path {volume.host_path!r} is not absolute")
            if not os.path.isabs(volume.container_path):
                problems.append(
                    f"{spec.name}: container path {volume.container_path!r} is not absolute"
                )

    for name, count in seen_names.items():
        if count > 1:
            problems.append(f"Container name {name!r} is used {count} times")
    return problems


# ----------------------------------------------------------------
# Step Runner
# ----------------------------------------------------------------
class StepRunner:
    """Run steps in order and stop at the first fatal failure."""

    def __init__(self) -> None:
        self.results: List[StepResult] = []

    def run(self, steps: Sequence[Step]) -> int:
        """Return 0 on success, otherwise the exit code of the failed step."""
        for index, step in enumerate(steps, start=1):
            result = self.run_step(index, step)
            self.results.append(result)
            if result.ok:
                continue
            if result.fatal:
                logger.error(f"{step.label} failed: {result.context}")
                print_fatal(result)
                return result.exit_code
            logger.warning(f"{step.label} failed, continuing: {result.context}")
            print_warning(f"{step.label} failed ({result.exit_code}): {result.context}")
        return 0

    def run_step(self, index: int, step: Step) -> StepResult:
        start = time.time()
        fatal = step.fatal
        try:
            print_step(f"{step.label}...")
            logger.debug(f"--- Step {index}: {step.label} ---")
            with console.status(f"[bold {NordColors.FROST_2}]{step.label}...[/]"):
                step.action()
        except KeyboardInterrupt:
            error = StepError(INTERRUPT_REASON, ErrorKind.INTERRUPTED, EXIT_INTERRUPTED)
            fatal = True
        except ProvisionInterrupted as e:
            error = StepError(INTERRUPT_REASON, ErrorKind.INTERRUPTED, 128 + e.signum)
            fatal = True
        except Exception as e:
            if not isinstance(e, (StepError, subprocess.SubprocessError, OSError)):
                logger.exception(f"Unexpected error in {step.label}")
            error = StepError.from_exception(e)
        else:
            elapsed = time.time() - start
            print_success(f"{step.label} completed in {elapsed:.2f}s")
            return StepResult.success(step.label, index, elapsed)
        return StepResult.failure(
            step.label, index, error, time.time() - start, fatal=fatal
        )


# ----------------------------------------------------------------
# Main Setup Class
# ----------------------------------------------------------------
class MediaServerSetup:
    """Provision a fresh LXC container as a Docker media server."""

    def __init__(
        self,
        config: Optional[Config] = None,
        specs: Optional[Sequence[ContainerSpec]] = None,
    ) -> None:
        self.config = config or Config()
        self.specs: List[ContainerSpec] = (
            list(specs) if specs is not None else default_container_specs(self.config)
        )
        self.runner = StepRunner()
        self.start_time = time.time()

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------
    def _run(
        self,
        cmd: List[str],
        network: bool = False,
        env: Optional[Dict[str, str]] = None,
    ) -> Optional[subprocess.CompletedProcess]:
        if self.config.DRY_RUN:
            print_message(f"Would run: {format_command(cmd)}", NordColors.POLAR_NIGHT_4)
            return None
        timeout = self.config.NETWORK_TIMEOUT if network else None
        return run_command(cmd, timeout=timeout, env=env)

    def _write(self, path: Union[str, Path], content: str) -> None:
        path = Path(path)
        if self.config.DRY_RUN:
            print_message(f"Would write {path}", NordColors.POLAR_NIGHT_4)
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        logger.debug(f"Wrote {path}")

    def _remove(self, path: Union[str, Path]) -> None:
        path = Path(path)
        if self.config.DRY_RUN:
            print_message(f"Would remove {path}", NordColors.POLAR_NIGHT_4)
            return
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
        logger.debug(f"Removed {path}")

    def build_steps(self) -> List[Step]:
        steps = [
            Step("Running pre-flight checks", self.preflight),
            Step("Setting up container OS", self.prepare_os),
            Step("Updating container OS", self.update_os),
            Step("Installing prerequisites", self.install_prerequisites),
            Step("Customizing Docker", self.configure_docker),
            Step("Installing Docker", self.install_docker),
            Step("Creating Docker and Media folders", self.create_directories),
        ]
        for spec in self.specs:
            steps.append(
                Step(f"Installing {spec.title}", partial(self.launch_container, spec))
            )
        steps.append(
            Step(
                "Customizing container",
                self.customize_container,
                fatal=not self.config.LENIENT_TWEAKS,
            )
        )
        if self.config.CLEANUP:
            steps.append(Step("Cleanup", self.cleanup_container))
        return steps

    def run(self) -> int:
        """Run every step and return the process exit code."""
        logger.info(f"Starting {APP_NAME} v{VERSION}")
        code = self.runner.run(self.build_steps())
        print_status_report(self.runner.results)

        elapsed = time.time() - self.start_time
        minutes, seconds = divmod(elapsed, 60)
        if code == 0:
            print_success(
                f"Setup completed in {int(minutes)}m {int(seconds)}s, "
                f"{len(self.specs)} containers launched."
            )
        else:
            logger.error(f"Setup aborted with exit code {code}")
        return code

    # ------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------
    def preflight(self) -> None:
        problems = validate_specs(self.specs)
        for problem in problems:
            logger.error(problem)
        if problems:
            raise StepError(
                f"{len(problems)} problem(s) in container configuration: {problems[0]}",
                ErrorKind.VALIDATION,
                EXIT_VALIDATION,
            )
        if not self.config.DRY_RUN and os.geteuid() != 0:
            raise StepError(
                "Script must be run as root.", ErrorKind.VALIDATION, EXIT_VALIDATION
            )

    def prepare_os(self) -> None:
        """Enable the locale and drop the SSH packages."""
        lang = self.config.LANG
        if not lang:
            logger.warning("LANG is not set; leaving locale.gen untouched.")
        elif self.config.DRY_RUN:
            print_message(
                f"Would enable {lang} in {self.config.LOCALE_GEN}",
                NordColors.POLAR_NIGHT_4,
            )
        elif not enable_locale(self.config.LOCALE_GEN, lang):
            logger.info(f"{lang} already enabled in {self.config.LOCALE_GEN}")

        self._run(["locale-gen"])
        self._run(["apt-get", "-y", "purge", *self.config.SSH_PACKAGES], env=APT_ENV)
        self._run(["apt-get", "-y", "autoremove"], env=APT_ENV)

    def update_os(self) -> None:
        self._run(["apt-get", "update"], network=True, env=APT_ENV)
        self._run(["apt-get", "-qqy", "upgrade"], network=True, env=APT_ENV)

    def install_prerequisites(self) -> None:
        self._run(
            ["apt-get", "-qqy", "install", *self.config.PREREQUISITES],
            network=True,
            env=APT_ENV,
        )

    def configure_docker(self) -> None:
        self._write(
            self.config.DOCKER_CONFIG_PATH,
            json.dumps(self.config.DOCKER_DAEMON_CONFIG, indent=2) + "\n",
        )

    def install_docker(self) -> None:
        """Install Docker with the vendor install script."""
        if command_exists("docker"):
            logger.info("Docker is already installed.")
            return

        if self.config.DRY_RUN:
            script = os.path.join(tempfile.gettempdir(), "media_server_lxc_get-docker.sh")
            self._run(["curl", "-fsSL", self.config.DOCKER_INSTALL_URL, "-o", script])
            self._run(["sh", script])
            return

        fd, script = tempfile.mkstemp(prefix="media_server_lxc_", suffix=".sh")
        os.close(fd)
        try:
            self._run(
                ["curl", "-fsSL", self.config.DOCKER_INSTALL_URL, "-o", script],
                network=True,
            )
            expected = self.config.DOCKER_INSTALL_SHA256
            if expected:
                actual = sha256sum(script)
                if actual.lower() != expected.lower():
                    raise StepError(
                        f"Checksum mismatch for {self.config.DOCKER_INSTALL_URL}: "
                        f"expected {expected}, got {actual}",
                        ErrorKind.VALIDATION,
                        EXIT_VALIDATION,
                    )
            else:
                logger.warning(
                    "Running the Docker install script without checksum verification."
                )
            self._run(["sh", script], network=True)
        finally:
            os.unlink(script)

        if not command_exists("docker"):
            raise StepError("docker not found after installation")

    def required_directories(self) -> List[Path]:
        """Bind mount directories in first-use order, without duplicates."""
        directories: List[Path] = []
        for path in [
            *(d for spec in self.specs for d in spec.host_directories()),
            *self.config.media_directories,
        ]:
            if path not in directories:
                directories.append(path)
        return directories

    def create_directories(self) -> None:
        directories = self.required_directories()
        for directory in directories:
            if self.config.DRY_RUN:
                print_message(f"Would create {directory}", NordColors.POLAR_NIGHT_4)
                continue
            directory.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Directory ensured: {directory}")

        if self.config.DRY_RUN:
            return
        missing = [str(d) for d in directories if not d.is_dir()]
        if missing:
            raise StepError(
                f"Directories missing after creation: {', '.join(missing)}",
                ErrorKind.VALIDATION,
                EXIT_VALIDATION,
            )

    def launch_container(self, spec: ContainerSpec) -> None:
        if not self.config.DRY_RUN:
            missing = [str(d) for d in spec.host_directories() if not d.is_dir()]
            if missing:
                raise StepError(
                    f"{spec.name}: bind mount source missing: {', '.join(missing)}",
                    ErrorKind.VALIDATION,
                    EXIT_VALIDATION,
                )
        self._run(spec.to_docker_args(), network=True)
        logger.info(f"Container {spec.name} started from {spec.image}")

    def customize_container(self) -> None:
        """Quiet the login banners and enable root autologin on the console."""
        for motd in self.config.MOTD_FILES:
            self._remove(motd)

        if self.config.DRY_RUN:
            print_message(f"Would touch {self.config.HUSHLOGIN}", NordColors.POLAR_NIGHT_4)
        else:
            Path(self.config.HUSHLOGIN).touch()

        self._write(self.config.GETTY_OVERRIDE, GETTY_OVERRIDE_CONTENT)
        self._run(["systemctl", "daemon-reload"])
        self._run(["systemctl", "restart", getty_service_name(self.config.GETTY_OVERRIDE)])

    def cleanup_targets(self) -> List[Path]:
        log_file = Path(self.config.LOG_FILE).resolve()
        targets = [Path(self.config.SCRIPT_PATH)]
        for directory in self.config.CLEANUP_DIRS:
            directory = Path(directory)
            if not directory.is_dir():
                continue
            for item in sorted(directory.iterdir()):
                # keep the provisioning log and the directories leading to it
                resolved = item.resolve()
                if resolved == log_file or resolved in log_file.parents:
                    continue
                targets.append(item)
        return targets

    def cleanup_container(self) -> None:
        """Remove the script, package caches and logs. Must run last."""
        for target in self.cleanup_targets():
            self._remove(target)


# ----------------------------------------------------------------
# Main Execution
# ----------------------------------------------------------------
def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Provision an LXC container as a Docker media server"
    )
    parser.add_argument("--dry-run", action="store_true", help="Print actions only")
    parser.add_argument(
        "--containers", metavar="FILE", help="JSON file replacing the built-in containers"
    )
    parser.add_argument(
        "--dump-containers",
        action="store_true",
        help="Print the container list as JSON and exit",
    )
    parser.add_argument(
        "--list-containers", action="store_true", help="Show the containers and exit"
    )
    parser.add_argument("--timezone", help="TZ passed to the containers")
    parser.add_argument("--log-file", help="Log file path")
    parser.add_argument(
        "--timeout",
        type=int,
        help="Timeout in seconds for network-bound commands (0 disables)",
    )
    parser.add_argument(
        "--installer-sha256", help="Expected SHA-256 of the Docker install script"
    )
    parser.add_argument(
        "--lenient-tweaks",
        action="store_true",
        help="Treat login customization failures as warnings",
    )
    parser.add_argument("--script-path", help="Script file removed during cleanup")
    parser.add_argument(
        "--no-cleanup", action="store_true", help="Skip the final cleanup step"
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    config = Config(DRY_RUN=args.dry_run, LENIENT_TWEAKS=args.lenient_tweaks)
    config.CLEANUP = not args.no_cleanup
    if args.timezone:
        config.TIMEZONE = args.timezone
    if args.log_file:
        config.LOG_FILE = args.log_file
    if args.timeout is not None:
        config.NETWORK_TIMEOUT = args.timeout or None
    if args.installer_sha256:
        config.DOCKER_INSTALL_SHA256 = args.installer_sha256
    if args.script_path:
        config.SCRIPT_PATH = os.path.abspath(args.script_path)
    return config


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point of the application."""
    args = parse_args(argv)
    config = build_config(args)

    try:
        specs = (
            load_container_specs(args.containers)
            if args.containers
            else default_container_specs(config)
        )
    except StepError as e:
        print_error(str(e))
        return e.exit_code

    if args.dump_containers:
        console.print_json(json.dumps([spec.to_dict() for spec in specs]))
        return 0
    if args.list_containers:
        print_container_table(specs)
        return 0

    setup_logger(config.LOG_FILE)
    setup_signal_handlers()
    console.print(create_header())

    try:
        return MediaServerSetup(config, specs).run()
    except KeyboardInterrupt:
        print_error(INTERRUPT_REASON)
        return EXIT_INTERRUPTED
    except ProvisionInterrupted as e:
        print_error(INTERRUPT_REASON)
        return 128 + e.signum


if __name__ == "__main__":
    sys.exit(main())
