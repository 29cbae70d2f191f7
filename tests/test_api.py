"""API tests for the IPAM and mesh routers."""
import inspect

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from meshplane.api.v1.deps import get_executor
from meshplane.config import settings
from meshplane.database.session import get_db
from meshplane.main import app

IPAM = f"{settings.API_PREFIX}/ipam"
MESH = f"{settings.API_PREFIX}/mesh"
HEADERS = {"X-Admin-Token": settings.ADMIN_SECRET}


@pytest.fixture
def client(db_session, executor):
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_executor] = lambda: executor
    # No context manager: the lifespan would create tables on the real engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def api_hub(client):
    response = client.post(f"{MESH}/hubs", headers=HEADERS, json={
        "name": "hub-api",
        "host": "hub.example.net",
        "endpoint": "vpn.example.net",
        "network_cidr": "10.50.0.0/24",
    })
    assert response.status_code == 201
    return response.json()["data"]


def test_requires_admin_token(client):
    assert client.get(f"{IPAM}/networks").status_code == 422
    response = client.get(f"{IPAM}/networks", headers={"X-Admin-Token": "wrong"})
    assert response.status_code == 401


def test_network_allocation_flow(client):
    created = client.post(f"{IPAM}/networks", headers=HEADERS, json={"cidr": "10.0.0.0/24", "name": "office"})
    assert created.status_code == 201
    network_id = created.json()["data"]["id"]
    assert created.json()["data"]["total_addresses"] == 254

    first = client.post(f"{IPAM}/networks/{network_id}/allocate", headers=HEADERS, json={"hostname": "web1"})
    assert first.json()["data"]["ip_address"] == "10.0.0.1"

    next_ip = client.get(f"{IPAM}/networks/{network_id}/next-ip", headers=HEADERS)
    assert next_ip.json()["ip_address"] == "10.0.0.2"

    again = client.post(f"{IPAM}/networks/{network_id}/allocate", headers=HEADERS, json={"ip_address": "10.0.0.1"})
    assert again.status_code == 409
    assert again.json()["error_code"] == "ADDRESS_STATE_CONFLICT"

    released = client.post(f"{IPAM}/networks/{network_id}/addresses/10.0.0.1/release", headers=HEADERS)
    assert released.json()["data"]["status"] == "available"


def test_reservations_report_overlaps(client):
    network_id = client.post(
        f"{IPAM}/networks", headers=HEADERS, json={"cidr": "10.1.0.0/24", "name": "lab"}
    ).json()["data"]["id"]

    first = client.post(f"{IPAM}/networks/{network_id}/reservations", headers=HEADERS,
                        json={"name": "a", "start_ip": "10.1.0.10", "end_ip": "10.1.0.20"})
    assert first.json()["data"]["address_count"] == 11

    second = client.post(f"{IPAM}/networks/{network_id}/reservations", headers=HEADERS,
                         json={"name": "b", "start_ip": "10.1.0.15", "end_ip": "10.1.0.25"})
    assert second.json()["data"]["overlaps"] == [first.json()["data"]["id"]]

    stats = client.get(f"{IPAM}/networks/{network_id}/stats", headers=HEADERS).json()
    assert stats["reserved"] == 22


def test_ipam_error_mapping(client):
    missing = client.get(f"{IPAM}/networks/999", headers=HEADERS)
    assert missing.status_code == 404
    assert missing.json()["error_code"] == "NOT_FOUND"

    bad = client.post(f"{IPAM}/networks", headers=HEADERS, json={"cidr": "10.0.0/33", "name": "x"})
    assert bad.status_code == 422

    network_id = client.post(
        f"{IPAM}/networks", headers=HEADERS, json={"cidr": "10.2.0.0/24", "name": "v4"}
    ).json()["data"]["id"]
    zone = client.get(f"{IPAM}/networks/{network_id}/reverse-zone", headers=HEADERS)
    assert zone.status_code == 422
    assert zone.json()["error_code"] == "INVALID_CIDR"


def test_reverse_zone(client):
    created = client.post(f"{IPAM}/networks", headers=HEADERS, json={"cidr": "2001:db8::/32", "name": "v6"})
    assert created.status_code == 201
    assert created.json()["data"]["total_addresses"] == 2 ** 96
    network_id = created.json()["data"]["id"]

    zone = client.get(f"{IPAM}/networks/{network_id}/reverse-zone", headers=HEADERS)

    assert zone.json()["zone"] == "8.b.d.0.1.0.0.2.ip6.arpa"


def test_hub_and_hostless_spoke(client, api_hub):
    assert api_hub["hub_ip"] == "10.50.0.1"
    assert "private_key_encrypted" not in api_hub

    spoke = client.post(f"{MESH}/hubs/{api_hub['id']}/spokes", headers=HEADERS, json={"name": "phone"})
    assert spoke.status_code == 201
    spoke_id = spoke.json()["data"]["id"]
    assert spoke.json()["data"]["allocated_ip"] == "10.50.0.2"

    assert client.get(f"{MESH}/spokes/{spoke_id}/config", headers=HEADERS).status_code == 404

    deployed = client.post(f"{MESH}/spokes/{spoke_id}/deploy", headers=HEADERS).json()
    assert deployed["success"] is True
    assert deployed["stored_for_download"] is True

    config = client.get(f"{MESH}/spokes/{spoke_id}/config", headers=HEADERS).json()
    assert config["config"].startswith("[Interface]\n")
    assert config["checksum"] == deployed["checksum"]


def test_duplicate_hub_is_rejected(client, api_hub):
    response = client.post(f"{MESH}/hubs", headers=HEADERS, json={
        "name": "hub-api",
        "host": "other.example.net",
        "endpoint": "vpn2.example.net",
        "network_cidr": "10.51.0.0/24",
    })
    assert response.status_code == 400
    assert response.json()["error_code"] == "BAD_REQUEST"


def test_missing_hub(client):
    assert client.get(f"{MESH}/hubs/999", headers=HEADERS).status_code == 404


def test_failed_deploy_and_retry(client, executor, api_hub):
    executor.failing_hosts.add("hub.example.net")

    result = client.post(f"{MESH}/hubs/{api_hub['id']}/deploy", headers=HEADERS).json()
    assert result["success"] is False
    assert result["failed_step"] == "prepare_directory"

    retried = client.post(f"{MESH}/hubs/{api_hub['id']}/retry", headers=HEADERS)
    assert retried.json()["deployment_status"] == "pending"

    again = client.post(f"{MESH}/hubs/{api_hub['id']}/retry", headers=HEADERS)
    assert again.status_code == 400


def test_poll_unreachable_hub_is_bad_gateway(client, executor, api_hub):
    executor.failing_hosts.add("hub.example.net")

    response = client.post(f"{MESH}/hubs/{api_hub['id']}/poll", headers=HEADERS)

    assert response.status_code == 502
    assert response.json()["details"]["host"] == "hub.example.net"


def test_partial_rotation_is_bad_gateway(client, executor, api_hub):
    for name in ("a", "b"):
        client.post(f"{MESH}/hubs/{api_hub['id']}/spokes", headers=HEADERS,
                    json={"name": name, "host": f"{name}.example.net"})
    executor.failing_hosts.add("b.example.net")

    response = client.post(f"{MESH}/hubs/{api_hub['id']}/rotate", headers=HEADERS, json={})

    assert response.status_code == 502
    body = response.json()
    assert body["error_code"] == "ROTATION_PARTIAL_FAILURE"
    assert [f["entity_name"] for f in body["details"]["failed"]] == ["b"]
    assert len(body["details"]["succeeded"]) == 1

    hub = client.get(f"{MESH}/hubs/{api_hub['id']}", headers=HEADERS).json()
    assert hub["public_key"] == body["details"]["new_public_key"]


def test_sync_report(client, executor, api_hub):
    client.post(f"{MESH}/hubs/{api_hub['id']}/spokes", headers=HEADERS,
                json={"name": "s1", "host": "s1.example.net"})
    executor.respond("hub.example.net", "ip link show", output="wg0: <UP>")
    executor.respond("hub.example.net", "wg show", output="interface: wg0\npeer: X=\n")

    report = client.get(f"{MESH}/sync", headers=HEADERS).json()

    assert report["in_sync"] is False
    assert report["hubs"] == []
    assert report["spokes"][0]["entity_name"] == "s1"

    repaired = client.post(f"{MESH}/sync/repair", headers=HEADERS).json()
    assert repaired["redeploy"]["success_count"] == 1


@pytest.mark.parametrize("path, method", [
    ("/hubs/{hub_id}/deploy", "POST"),
    ("/hubs/{hub_id}/status", "GET"),
    ("/hubs/{hub_id}/rotate", "POST"),
    ("/hubs/{hub_id}/poll", "POST"),
    ("/spokes/{spoke_id}/deploy", "POST"),
    ("/spokes/{spoke_id}/rotate", "POST"),
    ("/sync", "GET"),
    ("/sync/repair", "POST"),
])
def test_remote_handlers_run_in_threadpool(path, method):
    [route] = [
        r for r in app.routes
        if isinstance(r, APIRoute) and r.path == f"{MESH}{path}" and method in r.methods
    ]
    assert not inspect.iscoroutinefunction(route.endpoint)
