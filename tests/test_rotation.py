"""Tests for key rotation."""
import json
import os
import stat
from datetime import datetime, timedelta

import pytest

from meshplane.core.exceptions import KeypairGenerationFailure, RotationPartialFailure
from meshplane.core.rotation import KeyRotationCoordinator
from meshplane.database.models import KeyBackup


@pytest.fixture
def rotator(deployer, registry, keygen, tmp_path):
    return KeyRotationCoordinator(deployer, registry=registry, keygen=keygen, backup_dir=str(tmp_path))


def spoke_config(executor, spoke):
    return executor.written_files(spoke.host)["/etc/wireguard/wg0.conf"]


def test_hub_rotation_redeploys_spokes_then_hub(db_session, rotator, executor, hub, spokes):
    old_key = hub.public_key

    result = rotator.rotate(db_session, hub)

    assert result.success is True
    assert result.old_public_key == old_key
    assert hub.public_key == result.new_public_key != old_key
    assert hub.keys_rotated_at is not None
    assert len(result.succeeded) == 3
    assert result.entity_deployed is True

    for spoke in spokes:
        assert f"PublicKey = {hub.public_key}\n" in spoke_config(executor, spoke)
    assert executor.hosts_called()[-1] == "hub1.example.net"


def test_spoke_rotation_updates_hub_peer(db_session, rotator, executor, hub, spokes):
    target = spokes[0]

    result = rotator.rotate(db_session, target)

    assert result.success is True
    assert [r["entity_name"] for r in result.succeeded] == ["hub-1"]
    hub_config = executor.written_files("hub1.example.net")["/etc/wireguard/wg0.conf"]
    assert f"PublicKey = {target.public_key}\n" in hub_config
    assert result.old_public_key not in hub_config


def test_partial_failure_keeps_new_keys(db_session, rotator, executor, hub, spokes):
    executor.failing_hosts.add("spoke2.example.net")
    old_key = hub.public_key

    with pytest.raises(RotationPartialFailure, match="1 of 3 peers") as exc:
        rotator.rotate(db_session, hub)

    result = exc.value.result
    assert len(result.succeeded) == 2
    assert len(result.failed) == 1
    assert result.failed[0]["entity_name"] == "spoke-2"
    assert result.entity_deployed is True

    db_session.refresh(hub)
    assert hub.public_key != old_key
    assert hub.public_key == result.new_public_key


def test_backup_written_before_rotation(db_session, rotator, hub, tmp_path):
    old_key = hub.public_key
    old_private = hub.private_key_encrypted

    result = rotator.rotate(db_session, hub, backup=True)

    path = result.backup_path
    assert path is not None and os.path.dirname(path) == str(tmp_path)
    assert os.path.basename(path).startswith(f"wireguard-key-backup-hub-{hub.id}-")
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    with open(path) as f:
        payload = json.load(f)
    assert payload["old_public_key"] == old_key
    assert payload["old_private_key_encrypted"] == old_private

    row = db_session.query(KeyBackup).one()
    assert row.old_public_key == old_key


def test_key_failure_changes_nothing(db_session, rotator, executor, hub, monkeypatch):
    old_key = hub.public_key

    def broken():
        raise KeypairGenerationFailure("no entropy")

    monkeypatch.setattr(rotator.keygen, "generate", broken)

    with pytest.raises(KeypairGenerationFailure):
        rotator.rotate(db_session, hub, backup=True)

    assert hub.public_key == old_key
    assert executor.calls == []
    assert db_session.query(KeyBackup).count() == 0


def test_rotate_many_collects_failures(db_session, rotator, registry, executor, hub, spokes):
    other = registry.create_hub(db_session, name="hub-2", host="hub2.example.net",
                                endpoint="vpn2.example.net", network_cidr="10.9.0.0/24")
    executor.failing_hosts.add("spoke1.example.net")

    bulk = rotator.rotate_many(db_session, [hub, other])

    assert bulk.failure_count == 1
    assert bulk.failed[0]["entity_name"] == "hub-1"
    assert [s["entity_name"] for s in bulk.succeeded] == ["hub-2"]


def test_select_due(db_session, rotator, hub, spokes):
    assert rotator.select_due(db_session, older_than_days=30) == []

    later = datetime.utcnow() + timedelta(days=31)
    due = rotator.select_due(db_session, older_than_days=30, now=later)
    assert due == [hub] + spokes

    assert rotator.select_due(db_session, older_than_days=30, include_spokes=False, now=later) == [hub]
