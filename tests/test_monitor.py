"""Tests for the connection monitor."""
import csv
import json

import pytest

from meshplane.core.monitor import ConnectionMonitor, format_bytes, parse_dump
from meshplane.database.models import Connection, DeploymentStatus


NOW = 1_700_000_000
HUB_HOST = "hub1.example.net"


def dump_line(public_key, handshake, rx=1024, tx=2048, endpoint="203.0.113.5:51820"):
    return "\t".join([public_key, "(none)", endpoint, "10.8.0.2/32", str(handshake), str(rx), str(tx), "25"])


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def monitor(executor, registry, alerts):
    return ConnectionMonitor(
        executor,
        registry=registry,
        alert_threshold=300,
        on_alert=lambda hub, observation: alerts.append(observation),
        export_records=True,
        clock=lambda: NOW,
        sleep=lambda seconds: None,
    )


def serve_dump(executor, *lines):
    interface = "\t".join(["PRIVKEY=", "PUBKEY=", "51820", "off"])
    executor.respond(HUB_HOST, "wg show", output="\n".join((interface,) + lines))


def test_parse_dump_skips_interface_and_malformed_lines():
    output = "\n".join([
        "PRIV\tPUB\t51820\toff",
        dump_line("AAA=", NOW, endpoint="(none)"),
        "BBB=\t(none)\t1.2.3.4:1\t10.8.0.3/32\tnot-a-number\t0\t0\toff",
    ])

    peers = parse_dump(output)

    assert len(peers) == 1
    assert peers[0]["public_key"] == "AAA="
    assert peers[0]["endpoint"] is None


def test_stale_peer_alerts(db_session, monitor, executor, hub, spokes, alerts):
    serve_dump(
        executor,
        dump_line(spokes[0].public_key, NOW - 400),
        dump_line(spokes[1].public_key, NOW - 60),
        dump_line(spokes[2].public_key, 0),
    )

    observations = monitor.poll_hub(db_session, hub)

    assert [o.connection_status for o in observations] == ["stale", "connected", "stale"]
    assert observations[0].handshake_age == 400
    assert observations[2].handshake_age is None
    assert [a.peer_name for a in alerts] == ["spoke-1", "spoke-3"]


def test_unknown_peer_is_named_by_key_prefix(db_session, monitor, executor, hub):
    serve_dump(executor, dump_line("ZZZZZZZZZZZZ=", NOW - 10))

    observation = monitor.poll_hub(db_session, hub)[0]

    assert observation.peer_name == "Unknown (ZZZZZZZZ...)"
    assert observation.spoke_id is None


def test_connections_are_upserted(db_session, executor, registry, hub, spokes):
    monitor = ConnectionMonitor(executor, registry=registry, alert_threshold=300,
                                log_connections=True, clock=lambda: NOW)
    serve_dump(executor, dump_line(spokes[0].public_key, NOW - 60, rx=10, tx=20))

    monitor.poll_hub(db_session, hub)
    monitor.poll_hub(db_session, hub)

    connection = db_session.query(Connection).one()
    assert connection.spoke_id == spokes[0].id
    assert connection.bytes_received == 10
    assert connection.connection_status == "connected"


def test_run_survives_failing_hub(db_session, monitor, executor, registry, hub):
    broken = registry.create_hub(db_session, name="hub-2", host="down.example.net",
                                 endpoint="x", network_cidr="10.9.0.0/24")
    executor.failing_hosts.add("down.example.net")
    serve_dump(executor, dump_line("AAA=", NOW - 10))

    iterations = monitor.run(db_session, hubs=[broken, hub], interval=0, max_iterations=3)

    assert iterations == 3
    assert len(monitor.records) == 3


def test_monitored_hubs_only_deployed(db_session, monitor, hub):
    assert monitor.monitored_hubs(db_session) == []

    hub.deployment_status = DeploymentStatus.DEPLOYED.value
    db_session.commit()

    assert monitor.monitored_hubs(db_session) == [hub]


def test_export_json_and_csv(db_session, monitor, executor, hub, tmp_path):
    serve_dump(executor, dump_line("AAA=", NOW - 10))
    monitor.poll_hub(db_session, hub)

    json_path = monitor.export(str(tmp_path / "report.json"))
    with open(json_path) as f:
        data = json.load(f)
    assert data["monitoring_session"]["total_records"] == 1
    assert data["data"][0]["hub_name"] == "hub-1"
    assert monitor.records == []

    monitor.poll_hub(db_session, hub)
    csv_path = monitor.export(str(tmp_path / "report.csv"))
    with open(csv_path, newline="") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 1
    assert rows[0]["connection_status"] == "connected"
    assert rows[0]["rx_bytes"] == "1024"


def test_records_are_not_kept_unless_exporting(db_session, executor, registry, hub):
    monitor = ConnectionMonitor(executor, registry=registry, clock=lambda: NOW)
    serve_dump(executor, dump_line("AAA=", NOW - 10))

    monitor.run(db_session, hubs=[hub], interval=0, max_iterations=5)

    assert monitor.records == []


def test_run_stops_after_duration(db_session, executor, registry):
    now = [NOW]

    def sleep(seconds):
        now[0] += seconds

    monitor = ConnectionMonitor(executor, registry=registry, clock=lambda: now[0], sleep=sleep)

    iterations = monitor.run(db_session, hubs=[], interval=60, duration_minutes=5)

    assert iterations == 6
    assert now[0] == NOW + 300


def test_run_returns_on_keyboard_interrupt(db_session, executor, registry):
    def interrupt(seconds):
        raise KeyboardInterrupt

    monitor = ConnectionMonitor(executor, registry=registry, clock=lambda: NOW, sleep=interrupt)

    assert monitor.run(db_session, hubs=[], interval=30) == 1


def test_format_bytes():
    assert format_bytes(512) == "512 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(5 * 1024 ** 3) == "5 GB"
