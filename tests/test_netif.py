import pytest

from stalink import netif
from stalink.errors import FatalError

IW_PHY_WPA3 = """Wiphy phy0
	Supported Ciphers:
		* WEP40 (00-0f-ac:1)
		* TKIP (00-0f-ac:2)
		* CCMP-128 (00-0f-ac:4)
		* GCMP-128 (00-0f-ac:8)
	Available Antennas: TX 0x3 RX 0x3
	Supported AKM suites:
		* PSK (00-0f-ac:2)
		* SAE (00-0f-ac:8)
	Supported interface modes:
		 * managed
"""

IW_PHY_WPA2_ONLY = """Wiphy phy1
	Supported Ciphers:
		* CCMP-128 (00-0f-ac:4)
		* GCMP-128 (00-0f-ac:8)
	Supported AKM suites:
		* PSK (00-0f-ac:2)
		* FT-PSK (00-0f-ac:4)
	Supported interface modes:
		 * managed
"""

IW_PHY_SAE_FEATURE = """Wiphy phy2
	Supported commands:
		 * connect
	Device supports SAE with AUTHENTICATE command
"""


def test_sae_detected_from_akm_list():
    assert netif.phy_supports_sae(IW_PHY_WPA3) is True


def test_gcmp_cipher_is_not_mistaken_for_sae():
    assert netif.phy_supports_sae(IW_PHY_WPA2_ONLY) is False


def test_sae_detected_from_feature_line():
    assert netif.phy_supports_sae(IW_PHY_SAE_FEATURE) is True


def test_adapter_supports_sae(monkeypatch):
    monkeypatch.setattr(netif, "get_phy", lambda ifname: "phy0")
    monkeypatch.setattr(netif, "phy_info", lambda phy: IW_PHY_WPA3)
    assert netif.adapter_supports_sae("wlan0")
    monkeypatch.setattr(netif, "get_phy", lambda ifname: None)
    assert not netif.adapter_supports_sae("wlan0")


def test_parse_link_mac():
    out = (
        "3: wlan0: <BROADCAST,MULTICAST> mtu 1500 qdisc noop state DOWN mode DORMANT\n"
        "    link/ether 3C:A9:F4:12:34:56 brd ff:ff:ff:ff:ff:ff\n"
    )
    assert netif.parse_link_mac(out) == "3c:a9:f4:12:34:56"
    assert netif.parse_link_mac("") is None


def test_iface_down_failure_is_fatal(monkeypatch):
    def _fail(cmd, check=True, timeout_s=4.0):
        raise RuntimeError("cmd_failed rc=2")

    monkeypatch.setattr(netif, "_run", _fail)
    with pytest.raises(FatalError) as exc:
        netif.iface_down("wlan0", check=True)
    assert exc.value.code == "iface_down_failed"
    with pytest.raises(FatalError) as exc:
        netif.flush_ip("wlan0", check=True)
    assert exc.value.code == "flush_failed"
    with pytest.raises(FatalError) as exc:
        netif.set_macaddr("wlan0", "02:00:00:00:00:01")
    assert exc.value.code == "mac_set_failed"


def test_link_commands(monkeypatch):
    seen = []
    monkeypatch.setattr(netif, "_ip_bin", lambda: "ip")
    monkeypatch.setattr(netif, "_run", lambda cmd, check=True, timeout_s=4.0: seen.append(cmd) or (0, ""))
    netif.iface_down("wlan0")
    netif.flush_ip("wlan0")
    netif.iface_up("wlan0")
    netif.set_macaddr("wlan0", "02:00:00:00:00:01")
    assert seen == [
        ["ip", "link", "set", "down", "dev", "wlan0"],
        ["ip", "addr", "flush", "dev", "wlan0"],
        ["ip", "link", "set", "up", "dev", "wlan0"],
        ["ip", "link", "set", "dev", "wlan0", "address", "02:00:00:00:00:01"],
    ]


def test_get_phy_from_iw_dev_info(monkeypatch, tmp_path):
    monkeypatch.setattr(netif, "_SYS_NET", tmp_path)
    monkeypatch.setattr(
        netif, "_run",
        lambda cmd, check=True, timeout_s=4.0: (0, "Interface wlan0\n\tifindex 3\n\twiphy 1\n\ttype managed\n"),
    )
    assert netif.get_phy("wlan0") == "phy1"
