import json
import logging
import stat

from stalink import state
from stalink.logging import JsonFormatter


def test_update_state_merges_children(tmp_path):
    state.update_state(tmp_path, phase="associating", children={"wpa_supplicant": 10})
    st = state.update_state(tmp_path, children={"dhclient": 11})
    assert st["phase"] == "associating"
    assert st["children"] == {"wpa_supplicant": 10, "dhclient": 11}
    assert st["updated_ts"] is not None
    assert stat.S_IMODE((tmp_path / state.STATE_FILE).stat().st_mode) == 0o644


def test_update_state_after_dir_removed_is_dropped(tmp_path):
    gone = tmp_path / "gone"
    st = state.update_state(gone, phase="running")
    assert st["phase"] == "init"
    assert not gone.exists()


def test_load_state_tolerates_corruption(tmp_path):
    (tmp_path / state.STATE_FILE).write_text("{broken")
    assert state.load_state(tmp_path)["phase"] == "init"


def test_json_formatter_includes_structured_fields():
    record = logging.LogRecord("stalink.test", logging.INFO, __file__, 1, "phase:%s", ("running",), None)
    record.phase = "running"
    record.iface = "wlan0"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["msg"] == "phase:running"
    assert payload["phase"] == "running"
    assert payload["iface"] == "wlan0"
    assert payload["level"] == "INFO"
    assert "code" not in payload
