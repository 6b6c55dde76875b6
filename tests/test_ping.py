from __future__ import annotations


def test_ping_ok(server_up, base_url, http):
    r = http.get(f"{base_url}/api/ping")
    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    assert isinstance(data["drained"], int)
    assert isinstance(data["buffer"], int)
