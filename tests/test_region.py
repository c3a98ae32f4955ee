import ipaddress

import pytest

from bundlerelay.region import detect_region, find_region, local_region


def _node(ip, region, category="SEARCHER"):
    return {"category": category, "ip": ip, "region": region}


def test_find_region_matches_ip_with_port():
    payload = {"data": [_node("10.0.0.2:50052", "fra"), _node("10.0.0.1:50052", "ams")]}
    assert find_region(payload, "10.0.0.1") == "ams"


def test_find_region_accepts_address_object():
    payload = {"data": [_node("10.0.0.1", "ams")]}
    assert find_region(payload, ipaddress.ip_address("10.0.0.1")) == "ams"


def test_find_region_skips_other_categories():
    payload = {"data": [_node("10.0.0.1", "relay", category="RELAYER"), _node("10.0.0.1", "ams")]}
    assert find_region(payload, "10.0.0.1") == "ams"


def test_find_region_no_match():
    assert find_region({"data": [_node("10.0.0.2", "fra")]}, "10.0.0.1") is None


def test_find_region_malformed_entry_aborts():
    payload = {"data": [_node("not-an-ip", "x"), _node("10.0.0.1", "ams")]}
    assert find_region(payload, "10.0.0.1") is None
    payload = {"data": [{"category": "SEARCHER", "ip": 5}, _node("10.0.0.1", "ams")]}
    assert find_region(payload, "10.0.0.1") is None


def test_find_region_missing_data():
    assert find_region({}, "10.0.0.1") is None
    assert find_region({"data": "x"}, "10.0.0.1") is None


def test_detect_region_without_key(monkeypatch):
    monkeypatch.delenv("MEVITY_API_KEY", raising=False)
    assert detect_region("http://127.0.0.1:1", None) is None


@pytest.fixture
def fresh_cache():
    local_region.cache_clear()
    yield
    local_region.cache_clear()


def test_local_region_unknown_without_key(monkeypatch, fresh_cache):
    monkeypatch.delenv("MEVITY_API_KEY", raising=False)
    assert local_region() == "UNKNOWN"
    assert local_region.cache_info().currsize == 1