# meshplane/core/monitor.py
"""
Connection Monitor
Polls hub peers for handshake and traffic state
"""

import csv
import json
import shlex
import time
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from meshplane.config import settings
from meshplane.database.models import (
    Hub, Connection, ConnectionStatus, DeploymentStatus, EntityStatus
)
from .exceptions import MeshPlaneError
from .mesh_registry import MeshRegistry, mesh_registry
from .remote import RemoteExecutor

logger = logging.getLogger(__name__)

EXPORT_FIELDS = [
    "timestamp",
    "hub_id",
    "hub_name",
    "hub_type",
    "peer_name",
    "peer_public_key",
    "endpoint",
    "handshake_age",
    "rx_bytes",
    "tx_bytes",
    "connection_status",
]

# `wg show <iface> dump` peer line:
# public-key, preshared-key, endpoint, allowed-ips, latest-handshake, rx, tx, keepalive
_DUMP_PEER_FIELDS = 8


def format_bytes(count: int) -> str:
    """Human readable byte counter (B, KB, MB, GB, TB)"""
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(count)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


@dataclass
class PeerObservation:
    """One peer line of a hub dump, resolved against the registry"""
    hub_id: int
    public_key: str
    peer_name: str
    spoke_id: Optional[int]
    endpoint: Optional[str]
    handshake_timestamp: int
    handshake_age: Optional[int]  # None: never handshaked
    rx_bytes: int
    tx_bytes: int
    connection_status: str

    @property
    def is_stale(self) -> bool:
        return self.connection_status == ConnectionStatus.STALE.value


def parse_dump(output: str) -> List[dict]:
    """
    Parse `wg show <iface> dump` output into peer dicts

    The interface line and anything malformed is skipped.
    """
    peers = []
    for line in output.strip().splitlines():
        parts = line.strip().split("\t")
        if len(parts) < _DUMP_PEER_FIELDS:
            continue
        try:
            handshake = int(parts[4])
            rx = int(parts[5])
            tx = int(parts[6])
        except ValueError:
            logger.debug(f"Skipping malformed dump line: {line[:60]}")
            continue
        peers.append({
            "public_key": parts[0],
            "endpoint": None if parts[2] == "(none)" else parts[2],
            "handshake_timestamp": handshake,
            "rx_bytes": rx,
            "tx_bytes": tx,
        })
    return peers


class ConnectionMonitor:
    """
    Watches live peer state on hubs

    Responsibilities:
    - Parse peer dumps and resolve peers to spokes
    - Classify peers as connected or stale against an alert threshold
    - Alert on stale peers (log warning and optional callback)
    - Optionally upsert Connection rows
    - Optionally collect records for export; export() hands the buffer off and
      starts a new session
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        registry: Optional[MeshRegistry] = None,
        alert_threshold: Optional[int] = None,
        on_alert: Optional[Callable[[Hub, PeerObservation], None]] = None,
        log_connections: bool = False,
        export_records: bool = False,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.executor = executor
        self.registry = registry or mesh_registry
        self.alert_threshold = alert_threshold if alert_threshold is not None else settings.MONITOR_ALERT_THRESHOLD
        self.on_alert = on_alert
        self.log_connections = log_connections
        self.export_records = export_records
        self.clock = clock
        self.sleep = sleep

        self.records: List[dict] = []
        self.started_at = self.clock()

    def monitored_hubs(self, db: Session) -> List[Hub]:
        """Active hubs that have been deployed"""
        return db.query(Hub).filter(
            Hub.status == EntityStatus.ACTIVE.value,
            Hub.deployment_status == DeploymentStatus.DEPLOYED.value,
        ).order_by(Hub.id).all()

    def classify(self, handshake_age: Optional[int]) -> str:
        if handshake_age is not None and handshake_age <= self.alert_threshold:
            return ConnectionStatus.CONNECTED.value
        return ConnectionStatus.STALE.value

    def poll_hub(self, db: Session, hub: Hub) -> List[PeerObservation]:
        """
        Read the peer dump of one hub

        Raises:
            RemoteExecutionFailure: If the dump command fails
        """
        command = f"wg show {shlex.quote(hub.interface_name)} dump"
        result = self.executor.execute(hub.host, command, as_root=True)
        result.raise_for_failure(host=hub.host, command=command)

        now = self.clock()
        timestamp = datetime.utcfromtimestamp(now)
        observations = []

        for peer in parse_dump(result.output):
            spoke = self.registry.find_spoke_by_public_key(db, hub, peer["public_key"])
            epoch = peer["handshake_timestamp"]
            age = int(now - epoch) if epoch > 0 else None

            observation = PeerObservation(
                hub_id=hub.id,
                public_key=peer["public_key"],
                peer_name=spoke.name if spoke else f"Unknown ({peer['public_key'][:8]}...)",
                spoke_id=spoke.id if spoke else None,
                endpoint=peer["endpoint"],
                handshake_timestamp=epoch,
                handshake_age=age,
                rx_bytes=peer["rx_bytes"],
                tx_bytes=peer["tx_bytes"],
                connection_status=self.classify(age),
            )
            observations.append(observation)

            logger.debug(
                f"[{hub.name}] {observation.peer_name}: {observation.connection_status}, "
                f"RX {format_bytes(observation.rx_bytes)}, TX {format_bytes(observation.tx_bytes)}"
            )
            if observation.is_stale:
                self._alert(hub, observation)
            if self.log_connections:
                self._upsert_connection(db, hub, observation, timestamp)
            if self.export_records:
                self._record(hub, observation, timestamp)

        if self.log_connections:
            db.commit()
        return observations

    def _alert(self, hub: Hub, observation: PeerObservation) -> None:
        age = "never" if observation.handshake_age is None else f"{observation.handshake_age} seconds ago"
        logger.warning(
            f"ALERT: Peer {observation.peer_name} on hub {hub.name} last handshake {age} "
            f"(threshold: {self.alert_threshold})"
        )
        if self.on_alert:
            self.on_alert(hub, observation)

    def _upsert_connection(
        self, db: Session, hub: Hub, observation: PeerObservation, timestamp: datetime
    ) -> None:
        connection = db.query(Connection).filter(
            Connection.hub_id == hub.id,
            Connection.peer_public_key == observation.public_key,
        ).first()
        if connection is None:
            connection = Connection(hub_id=hub.id, peer_public_key=observation.public_key)
            db.add(connection)

        connection.spoke_id = observation.spoke_id
        connection.endpoint = observation.endpoint
        connection.last_handshake = (
            datetime.utcfromtimestamp(observation.handshake_timestamp)
            if observation.handshake_timestamp > 0 else None
        )
        connection.bytes_received = observation.rx_bytes
        connection.bytes_sent = observation.tx_bytes
        connection.connection_status = observation.connection_status
        connection.last_seen = timestamp

    def _record(self, hub: Hub, observation: PeerObservation, timestamp: datetime) -> None:
        self.records.append({
            "timestamp": timestamp.isoformat(),
            "hub_id": hub.id,
            "hub_name": hub.name,
            "hub_type": hub.hub_type,
            "peer_name": observation.peer_name,
            "peer_public_key": observation.public_key,
            "endpoint": observation.endpoint,
            "handshake_age": observation.handshake_age,
            "rx_bytes": observation.rx_bytes,
            "tx_bytes": observation.tx_bytes,
            "connection_status": observation.connection_status,
        })

    def run_iteration(self, db: Session, hubs: List[Hub]) -> Dict[int, List[PeerObservation]]:
        """Poll each hub once; a failing hub is logged and skipped"""
        results: Dict[int, List[PeerObservation]] = {}
        for hub in hubs:
            try:
                results[hub.id] = self.poll_hub(db, hub)
            except MeshPlaneError as e:
                logger.error(f"Error monitoring {hub.name}: {e}")
        return results

    def run(
        self,
        db: Session,
        hubs: Optional[List[Hub]] = None,
        interval: Optional[int] = None,
        duration_minutes: int = 0,
        max_iterations: Optional[int] = None,
    ) -> int:
        """
        Poll repeatedly until the duration elapses (0 = indefinite),
        max_iterations is reached, or the loop is interrupted

        Returns:
            Number of completed iterations
        """
        interval = interval if interval is not None else settings.MONITOR_INTERVAL
        hubs = hubs if hubs is not None else self.monitored_hubs(db)
        self.started_at = self.clock()
        end_time = self.started_at + duration_minutes * 60 if duration_minutes > 0 else None
        iterations = 0

        logger.info(
            f"Monitoring {len(hubs)} hub(s), interval {interval}s, "
            f"duration {f'{duration_minutes} minutes' if end_time else 'indefinite'}"
        )

        try:
            while True:
                self.run_iteration(db, hubs)
                iterations += 1

                if max_iterations is not None and iterations >= max_iterations:
                    break
                if end_time is not None and self.clock() >= end_time:
                    logger.info("Monitoring duration completed")
                    break
                self.sleep(interval)
        except KeyboardInterrupt:
            logger.info("Monitoring interrupted")

        return iterations

    def export(self, path: str) -> str:
        """
        Write collected records as JSON (path ends in .json) or CSV

        The buffer is emptied afterwards and a new session starts at the
        export time.
        """
        end = self.clock()
        records, self.records = self.records, []

        if path.endswith(".json"):
            data = {
                "monitoring_session": {
                    "start_time": datetime.utcfromtimestamp(self.started_at).strftime("%Y-%m-%d %H:%M:%S"),
                    "end_time": datetime.utcfromtimestamp(end).strftime("%Y-%m-%d %H:%M:%S"),
                    "duration_seconds": int(end - self.started_at),
                    "total_records": len(records),
                },
                "data": records,
            }
            with open(path, "w") as f:
                json.dump(data, f, indent=2)
        else:
            with open(path, "w", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=EXPORT_FIELDS)
                writer.writeheader()
                writer.writerows(records)

        self.started_at = end
        logger.info(f"Monitoring data exported to: {path} ({len(records)} records)")
        return path
