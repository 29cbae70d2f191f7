# tests/conftest.py

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from meshplane.database.models import Base
from meshplane.core.config_renderer import ConfigRenderer
from meshplane.core.deployment import DeploymentOrchestrator
from meshplane.core.ipam import IPAMService
from meshplane.core.keys import KeyPairGenerator, KeyVault
from meshplane.core.mesh_registry import MeshRegistry
from meshplane.core.remote import RemoteExecutor, RemoteResult


class FakeRemoteExecutor(RemoteExecutor):
    """
    In-memory executor.

    Every call is recorded. Commands succeed with empty output unless a host
    is in `failing_hosts`, a command contains one of `failing_commands`, or a
    canned response is registered with `respond()`.
    """

    def __init__(self):
        self.calls = []
        self.failing_hosts = set()
        self.failing_commands = []
        self._responses = []
        self._files = {}

    def respond(self, host, command_prefix, output="", success=True, error=""):
        self._responses.append((host, command_prefix, RemoteResult(
            success=success, output=output, error=error, return_code=0 if success else 1,
        )))

    def execute(self, host, command, as_root=False):
        self.calls.append((host, command, as_root))

        if host in self.failing_hosts:
            return RemoteResult(success=False, error=f"ssh: connect to host {host}: Connection refused", return_code=255)
        for fragment in self.failing_commands:
            if fragment in command:
                return RemoteResult(success=False, error=f"{fragment}: command failed", return_code=1)
        for resp_host, prefix, result in self._responses:
            if resp_host == host and command.startswith(prefix):
                return result
        return RemoteResult(success=True)

    def write_file(self, host, path, content, mode="600", as_root=True):
        result = self.execute(host, f"write_file {path} mode={mode}", as_root=as_root)
        if result.success:
            self._files.setdefault(host, {})[path] = content
        return result

    def hosts_called(self):
        """Hosts in first-call order"""
        seen = []
        for host, _, _ in self.calls:
            if host not in seen:
                seen.append(host)
        return seen

    def written_files(self, host):
        """Latest content of every file written to a host, keyed by path"""
        return dict(self._files.get(host, {}))


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="session")
def vault():
    return KeyVault(secret="test-secret", salt="test-salt")


@pytest.fixture
def keygen(vault):
    return KeyPairGenerator(vault=vault)


@pytest.fixture
def ipam():
    return IPAMService(retry_attempts=3)


@pytest.fixture
def registry(ipam, keygen):
    return MeshRegistry(ipam=ipam, keygen=keygen)


@pytest.fixture
def executor():
    return FakeRemoteExecutor()


@pytest.fixture
def renderer(vault):
    return ConfigRenderer(vault=vault, keepalive=25)


@pytest.fixture
def deployer(executor, registry, renderer):
    return DeploymentOrchestrator(
        executor=executor,
        registry=registry,
        renderer=renderer,
        config_dir="/etc/wireguard",
    )


@pytest.fixture
def hub(db_session, registry):
    return registry.create_hub(
        db_session,
        name="hub-1",
        host="hub1.example.net",
        endpoint="vpn.example.net",
        network_cidr="10.8.0.0/24",
    )


@pytest.fixture
def spokes(db_session, registry, hub):
    return [
        registry.create_spoke(db_session, hub, name=f"spoke-{i}", host=f"spoke{i}.example.net")
        for i in range(1, 4)
    ]
