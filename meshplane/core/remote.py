# meshplane/core/remote.py
"""
Remote Command Execution
Runs commands and uploads files on fleet nodes over SSH (paramiko)
"""

import io
import shlex
import socket
import uuid
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

import paramiko

from meshplane.config import settings
from .exceptions import RemoteExecutionFailure

logger = logging.getLogger(__name__)


@dataclass
class RemoteResult:
    """Outcome of one remote command"""
    success: bool
    output: str = ""
    error: str = ""
    return_code: int = 0

    def raise_for_failure(self, host: Optional[str] = None, command: Optional[str] = None) -> None:
        if not self.success:
            raise RemoteExecutionFailure(
                f"Remote command failed on {host}: {self.error or self.output}",
                host=host,
                command=command,
                output=self.output,
                error=self.error,
            )


@dataclass
class FileUpload:
    """Pipeline step that overwrites a remote file"""
    path: str
    content: str
    mode: str = "600"


Step = Union[str, FileUpload]


class RemoteExecutor(ABC):
    """
    Contract for running commands on a remote host

    Implementations never raise for a failed command; they report it
    through RemoteResult so callers can collect per-host outcomes.
    """

    @abstractmethod
    def execute(self, host: str, command: str, as_root: bool = False) -> RemoteResult:
        ...

    @abstractmethod
    def write_file(
        self, host: str, path: str, content: str, mode: str = "600", as_root: bool = True
    ) -> RemoteResult:
        """Overwrite a remote file with `content` and set its mode"""
        ...


class SshRemoteExecutor(RemoteExecutor):
    """
    Executes commands through a paramiko SSH connection

    Responsibilities:
    - Key based, non-interactive connections with a connect timeout
    - Privilege escalation through `sudo -n` for non-root users
    - Per-command timeout reported as a failed result
    - File uploads over SFTP, staged in /tmp and moved into place when
      the login user is not root
    """

    def __init__(
        self,
        user: Optional[str] = None,
        port: Optional[int] = None,
        key_path: Optional[str] = None,
        connect_timeout: Optional[int] = None,
        command_timeout: Optional[int] = None,
    ):
        self.user = user or settings.SSH_USER
        self.port = port or settings.SSH_PORT
        self.key_path = key_path or settings.SSH_KEY_PATH
        self.connect_timeout = connect_timeout or settings.SSH_CONNECT_TIMEOUT
        self.command_timeout = command_timeout or settings.REMOTE_COMMAND_TIMEOUT

    def _split_target(self, host: str) -> Tuple[str, str]:
        if "@" in host:
            user, hostname = host.split("@", 1)
            return user, hostname
        return self.user, host

    def _connect(self, host: str) -> paramiko.SSHClient:
        user, hostname = self._split_target(host)
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        client.connect(
            hostname=hostname,
            port=self.port,
            username=user,
            key_filename=self.key_path,
            timeout=self.connect_timeout,
            banner_timeout=self.connect_timeout,
            allow_agent=self.key_path is None,
            look_for_keys=self.key_path is None,
        )
        return client

    def _wrap(self, host: str, command: str, as_root: bool) -> str:
        user, _ = self._split_target(host)
        if as_root and user != "root":
            return f"sudo -n sh -c {shlex.quote(command)}"
        return command

    def execute(self, host: str, command: str, as_root: bool = False) -> RemoteResult:
        remote_command = self._wrap(host, command, as_root)
        logger.debug(f"[{host}] Running: {remote_command[:120]}")

        try:
            client = self._connect(host)
        except (paramiko.SSHException, OSError) as e:
            logger.error(f"[{host}] SSH connection failed: {e}")
            return RemoteResult(success=False, error=f"SSH connection failed: {e}", return_code=-1)

        try:
            _, stdout, stderr = client.exec_command(remote_command, timeout=self.command_timeout)
            output = stdout.read().decode("utf-8", errors="replace").strip()
            error = stderr.read().decode("utf-8", errors="replace").strip()
            return_code = stdout.channel.recv_exit_status()
        except socket.timeout:
            logger.error(f"[{host}] Command timed out after {self.command_timeout}s")
            return RemoteResult(
                success=False,
                error=f"Command timed out after {self.command_timeout}s",
                return_code=-1,
            )
        except (paramiko.SSHException, OSError) as e:
            logger.error(f"[{host}] Command failed: {e}")
            return RemoteResult(success=False, error=str(e), return_code=-1)
        finally:
            client.close()

        result = RemoteResult(success=return_code == 0, output=output, error=error, return_code=return_code)
        if not result.success:
            logger.warning(f"[{host}] Command exited {return_code}: {error}")
        return result

    def write_file(
        self, host: str, path: str, content: str, mode: str = "600", as_root: bool = True
    ) -> RemoteResult:
        user, _ = self._split_target(host)
        staged = as_root and user != "root"
        target = f"/tmp/meshplane-{uuid.uuid4().hex}.tmp" if staged else path

        try:
            client = self._connect(host)
        except (paramiko.SSHException, OSError) as e:
            logger.error(f"[{host}] SSH connection failed: {e}")
            return RemoteResult(success=False, error=f"SSH connection failed: {e}", return_code=-1)

        try:
            sftp = client.open_sftp()
            try:
                sftp.putfo(io.BytesIO(content.encode("utf-8")), target)
                sftp.chmod(target, int(mode, 8))
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            logger.error(f"[{host}] Upload of {path} failed: {e}")
            return RemoteResult(success=False, error=f"Upload of {path} failed: {e}", return_code=-1)
        finally:
            client.close()

        if not staged:
            logger.debug(f"[{host}] Wrote {path}")
            return RemoteResult(success=True)

        quoted = shlex.quote(path)
        return self.execute(
            host,
            f"mv {shlex.quote(target)} {quoted} && chmod {shlex.quote(mode)} {quoted}",
            as_root=True,
        )



@dataclass
class StepOutcome:
    name: str
    result: RemoteResult


@dataclass
class PipelineResult:
    """Outcome of a named-step pipeline; failed_step is set when a step failed"""
    host: str
    success: bool = True
    steps: List[StepOutcome] = field(default_factory=list)
    failed_step: Optional[str] = None

    @property
    def error(self) -> str:
        if self.failed_step is None:
            return ""
        result = self.steps[-1].result
        return f"{self.failed_step}: {result.error or result.output or 'exit code ' + str(result.return_code)}"


class StepPipeline:
    """
    Sequence of named remote commands that halts on the first failure

    A step is either a shell command or a FileUpload.

    Usage:
        pipeline = StepPipeline([
            ("prepare_directory", "mkdir -p /etc/wireguard"),
            ("write_config", FileUpload("/etc/wireguard/wg0.conf", config)),
        ])
        result = pipeline.run(executor, "node1", as_root=True)
    """

    def __init__(self, steps: Optional[List[Tuple[str, Step]]] = None):
        self.steps: List[Tuple[str, Step]] = list(steps or [])

    def run(self, executor: RemoteExecutor, host: str, as_root: bool = False) -> PipelineResult:
        outcome = PipelineResult(host=host)

        for name, step in self.steps:
            if isinstance(step, FileUpload):
                result = executor.write_file(host, step.path, step.content, step.mode, as_root=as_root)
            else:
                result = executor.execute(host, step, as_root=as_root)
            outcome.steps.append(StepOutcome(name=name, result=result))

            if not result.success:
                outcome.success = False
                outcome.failed_step = name
                logger.error(f"[{host}] Step '{name}' failed: {result.error or result.output}")
                break

        return outcome
