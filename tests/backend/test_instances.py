from __future__ import annotations

GATEWAY = {
    "instance_name": "Loja centro",
    "instance_id": "inst-centro",
    "api_url": "http://gateway.test/",
    "api_key": "gw-key",
}


def test_create_instance_checks_gateway_and_hides_key(client, gateway) -> None:
    response = client.post("/instances", json=GATEWAY)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "connected"
    assert data["phone_number"] == "5511999990000"
    assert data["api_url"] == "http://gateway.test"
    assert data["last_connected_at"] is not None
    assert "api_key" not in data
    assert gateway.requests[0].headers["authorization"] == "Bearer gw-key"

    listed = client.get("/instances").json()
    assert [item["instance_id"] for item in listed] == ["inst-centro"]
    assert all("api_key" not in item for item in listed)


def test_unreachable_gateway_rejects_instance(client, gateway) -> None:
    gateway.reachable = False

    response = client.post("/instances", json=GATEWAY)

    assert response.status_code == 400
    assert client.get("/instances").json() == []


def test_status_refresh_marks_error_when_gateway_fails(client, gateway) -> None:
    created = client.post("/instances", json=GATEWAY).json()

    gateway.connected = False
    refreshed = client.get(f"/instances/{created['id']}/status")
    assert refreshed.status_code == 200
    assert refreshed.json()["status"] == "disconnected"

    gateway.reachable = False
    failed = client.get(f"/instances/{created['id']}/status")
    assert failed.status_code == 200
    assert failed.json()["status"] == "error"


def test_qr_code_logout_and_restart(client, gateway) -> None:
    created = client.post("/instances", json=GATEWAY).json()

    qr = client.get(f"/instances/{created['id']}/qr")
    assert qr.status_code == 200
    assert qr.json()["qr_code"].startswith("data:image/png")

    assert client.post(f"/instances/{created['id']}/restart").json() == {"success": True}
    assert client.post(f"/instances/{created['id']}/logout").json() == {"success": True}
    assert client.get("/instances").json()[0]["status"] == "disconnected"

    gateway.reachable = False
    assert client.get(f"/instances/{created['id']}/qr").status_code == 502
    assert client.post(f"/instances/{created['id']}/restart").json() == {"success": False}


def test_unknown_instance_returns_404(client) -> None:
    assert client.get("/instances/inst_missing/status").status_code == 404
    assert client.get("/instances/inst_missing/qr").status_code == 404
    assert client.post("/instances/inst_missing/logout").status_code == 404
