# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Tests for UPSDevice and the JSON device store."""

import json
import os
import sys
from datetime import date

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "monitor"))

from upswatch.ups_config import PROTOCOL_NUT, PROTOCOL_SNMP, DeviceStore, UPSDevice


# ---------------------------------------------------------------------------
# UPSDevice
# ---------------------------------------------------------------------------

class TestUPSDevice:
    def test_default_ports(self):
        assert UPSDevice("a", "10.0.0.1").port == 3493
        assert UPSDevice("b", "10.0.0.1", protocol=PROTOCOL_SNMP).port == 161
        assert UPSDevice("c", "10.0.0.1", port=3494).port == 3494

    def test_label(self):
        assert UPSDevice("a", "10.0.0.1").label == "a"
        assert UPSDevice("a", "10.0.0.1", name="Rack").label == "Rack"

    def test_battery_date(self):
        dev = UPSDevice("a", "10.0.0.1", battery_install_date="2022-05-01")
        assert dev.battery_installed_on == date(2022, 5, 1)
        assert UPSDevice("a", "10.0.0.1").battery_installed_on is None

    def test_dict_round_trip_keeps_protocol_fields(self):
        nut = UPSDevice("a", "10.0.0.1", ups_name="rack", username="mon", password="pw")
        d = nut.to_dict()
        assert "community" not in d
        assert UPSDevice.from_dict(d) == nut

        snmp = UPSDevice("b", "10.0.0.2", protocol=PROTOCOL_SNMP, community="private")
        d = snmp.to_dict()
        assert d["community"] == "private"
        assert "ups_name" not in d
        assert UPSDevice.from_dict(d) == snmp

    def test_from_dict_defaults(self):
        dev = UPSDevice.from_dict({"device_id": "a", "host": "10.0.0.1", "protocol": "SNMP"})
        assert dev.protocol == PROTOCOL_SNMP
        assert dev.port == 161
        assert dev.enabled is True

    @pytest.mark.parametrize("kwargs", [
        {"device_id": "bad id", "host": "10.0.0.1"},
        {"device_id": "a/b", "host": "10.0.0.1"},
        {"device_id": "a", "host": ""},
        {"device_id": "a", "host": "10.0.0.1", "protocol": "modbus"},
        {"device_id": "a", "host": "10.0.0.1", "port": 70000},
        {"device_id": "a", "host": "10.0.0.1", "battery_install_date": "May 2022"},
    ])
    def test_validate_rejects(self, kwargs):
        with pytest.raises(ValueError):
            UPSDevice(**kwargs).validate()


# ---------------------------------------------------------------------------
# DeviceStore
# ---------------------------------------------------------------------------

class TestDeviceStore:
    def test_missing_file_is_empty(self, tmp_path):
        store = DeviceStore(str(tmp_path / "devices.json"))
        assert store.list_devices() == []

    def test_add_persists(self, tmp_path):
        path = tmp_path / "devices.json"
        store = DeviceStore(str(path))
        store.add(UPSDevice("a", "10.0.0.1", name="Rack"))
        data = json.loads(path.read_text())
        assert data["devices"][0]["device_id"] == "a"
        assert not (tmp_path / "devices.tmp").exists()
        assert DeviceStore(str(path)).get("a").name == "Rack"

    def test_duplicate_add(self, tmp_path):
        store = DeviceStore(str(tmp_path / "devices.json"))
        store.add(UPSDevice("a", "10.0.0.1"))
        with pytest.raises(ValueError):
            store.add(UPSDevice("a", "10.0.0.2"))

    def test_update_and_remove(self, tmp_path):
        store = DeviceStore(str(tmp_path / "devices.json"))
        store.add(UPSDevice("a", "10.0.0.1"))
        store.update(UPSDevice("a", "10.0.0.9", enabled=False))
        assert store.get("a").host == "10.0.0.9"
        assert store.list_enabled_devices() == []
        store.remove("a")
        assert store.get("a") is None
        with pytest.raises(KeyError):
            store.remove("a")
        with pytest.raises(KeyError):
            store.update(UPSDevice("zz", "10.0.0.1"))

    def test_invalid_entries_are_skipped(self, tmp_path):
        path = tmp_path / "devices.json"
        path.write_text(json.dumps({"devices": [
            {"device_id": "good", "host": "10.0.0.1"},
            {"device_id": "bad", "host": ""},
            {"host": "10.0.0.3"},
        ]}))
        store = DeviceStore(str(path))
        assert [d.device_id for d in store.list_devices()] == ["good"]

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "devices.json"
        path.write_text("{not json")
        assert DeviceStore(str(path)).list_devices() == []

    def test_reload_if_changed(self, tmp_path):
        path = tmp_path / "devices.json"
        store = DeviceStore(str(path))
        store.add(UPSDevice("a", "10.0.0.1"))
        assert store.reload_if_changed() is False

        path.write_text(json.dumps({"devices": [{"device_id": "b", "host": "10.0.0.2"}]}))
        os.utime(path, (1, 1))
        assert store.reload_if_changed() is True
        assert [d.device_id for d in store.list_devices()] == ["b"]

    def test_configured_hosts(self, tmp_path):
        store = DeviceStore(str(tmp_path / "devices.json"))
        store.add(UPSDevice("a", "10.0.0.1"))
        store.add(UPSDevice("b", "10.0.0.2", enabled=False))
        assert store.configured_hosts() == {"10.0.0.1", "10.0.0.2"}
