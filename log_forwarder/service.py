"""systemd unit generation for running the forwarder as a service."""

import getpass
import os
import sys

SERVICE_NAME = "otlp-log-forwarder"
DEFAULT_UNIT_PATH = f"/tmp/{SERVICE_NAME}.service"

_UNIT_TEMPLATE = """[Unit]
Description=OTLP Log Forwarder
After=network.target

[Service]
Type=simple
User={user}
WorkingDirectory={workdir}
ExecStart={exec_start}
Restart=on-failure
RestartSec=5s

[Install]
WantedBy=multi-user.target
"""


def render_systemd_unit(user: str, workdir: str, exec_start: str) -> str:
    return _UNIT_TEMPLATE.format(user=user, workdir=workdir, exec_start=exec_start)


def write_systemd_unit(path: str = DEFAULT_UNIT_PATH, config_path: str | None = None) -> str:
    """Write a unit file that runs this interpreter on main.py and return its path."""
    main_py = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "main.py")
    exec_start = f"{sys.executable} {main_py}"
    if config_path:
        exec_start += f" --config {os.path.abspath(config_path)}"
    content = render_systemd_unit(getpass.getuser(), os.getcwd(), exec_start)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)

    print(f"Service file created at: {path}")
    print("To install the service, run:")
    print(f"  sudo cp {path} /etc/systemd/system/")
    print("  sudo systemctl daemon-reload")
    print(f"  sudo systemctl enable {SERVICE_NAME}")
    print(f"  sudo systemctl start {SERVICE_NAME}")
    return path
