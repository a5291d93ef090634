# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Shared fixtures plus HTML report metadata."""

import json
import os
import platform
import subprocess
from datetime import datetime

import pytest


def _git(cmd: str) -> str:
    try:
        return subprocess.check_output(
            ["git"] + cmd.split(), stderr=subprocess.DEVNULL
        ).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return ""


def pytest_configure(config):
    """Add project metadata to the HTML report when pytest-metadata is installed."""
    try:
        from pytest_metadata.plugin import metadata_key
    except ImportError:
        return

    config.stash[metadata_key]["Project"] = "UPS Watch"
    config.stash[metadata_key]["Git Commit"] = _git("rev-parse --short HEAD")
    config.stash[metadata_key]["Python"] = platform.python_version()
    config.stash[metadata_key]["Timestamp"] = datetime.now().isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

@pytest.fixture()
def clean_env(monkeypatch):
    """Strip UPS_* and MQTT_* variables so Config sees only what a test sets."""
    for key in list(os.environ):
        if key.startswith(("UPS_", "MQTT_")):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture()
def devices_file(tmp_path):
    """Write a devices.json with one enabled NUT device and return its path."""
    path = tmp_path / "devices.json"
    path.write_text(json.dumps({"devices": [
        {"device_id": "sim", "host": "127.0.0.1", "name": "Simulated"},
    ]}))
    return path


@pytest.fixture()
def monitor_env(clean_env, devices_file, tmp_path):
    """Point the monitor at temporary device and scheduler state files."""
    clean_env.setenv("UPS_DEVICES_FILE", str(devices_file))
    clean_env.setenv("UPS_STATE_FILE", str(tmp_path / "state.json"))
    return clean_env
