"""SSH transport driven through the OpenSSH client."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path

from ai_toolbox.adapters.base import CHUNK_SIZE, ProgressCallback, RemoteStat, RemoteTransport
from ai_toolbox.config import SSHConnection
from ai_toolbox.errors import RemoteConnectionError, RemoteFileError

logger = logging.getLogger("ai_toolbox.adapters.ssh")

# ssh exits with 255 when the connection itself failed.
SSH_CONNECTION_FAILED = 255
MISSING_MARKER = "__ai_toolbox_missing__"
CONNECTED_MARKER = "__connected__"


def remote_quote(path: str) -> str:
    """Quote a remote path for the remote shell, keeping ``~/`` home-relative."""
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


class SshTransport(RemoteTransport):
    """One multiplexed SSH session (ControlMaster) per sync run."""

    def __init__(self, connection: SSHConnection, connect_timeout: float = 10.0):
        self.connection = connection
        self.connect_timeout = connect_timeout
        self._control_dir: Path | None = None

    # -- command building ----------------------------------------------

    def _base_args(self) -> list[str]:
        conn = self.connection
        args = [
            "-p",
            str(conn.port),
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"ConnectTimeout={max(1, int(self.connect_timeout))}",
            "-o",
            "ServerAliveInterval=15",
            "-o",
            "ServerAliveCountMax=3",
        ]
        if conn.auth_method == "key" and conn.private_key_path:
            args += ["-i", os.path.expanduser(conn.private_key_path)]
            if not conn.passphrase:
                args += ["-o", "BatchMode=yes"]
        return args

    def _ssh(self) -> tuple[list[str], dict[str, str] | None]:
        """The ssh argv prefix and the environment to run it with."""
        conn = self.connection
        if conn.auth_method == "password" and conn.password:
            # sshpass reads the password from SSHPASS so it never shows in ps.
            env = {**os.environ, "SSHPASS": conn.password}
            return ["sshpass", "-e", "ssh"] + self._base_args(), env
        return ["ssh"] + self._base_args(), None

    @property
    def _control_path(self) -> str:
        if self._control_dir is None:
            raise RemoteConnectionError(f"Not connected to {self.display_name}")
        return str(self._control_dir / "cm")

    def _session_args(self) -> list[str]:
        return ["-o", f"ControlPath={self._control_path}", "-o", "ControlMaster=no"]

    # -- session -------------------------------------------------------

    def connect(self) -> None:
        if self._control_dir is not None:
            return
        self._control_dir = Path(tempfile.mkdtemp(prefix="ai-toolbox-ssh-"))
        argv, env = self._ssh()
        argv += [
            "-o",
            "ControlMaster=yes",
            "-o",
            f"ControlPath={self._control_path}",
            "-o",
            "ControlPersist=yes",
            "-f",
            "-N",
            self.connection.target,
        ]
        log_path = self._control_dir / "master.log"
        logger.debug("Opening SSH session to %s", self.display_name)
        try:
            # The master forks into the background and keeps its stderr, so
            # it goes to a file rather than a pipe we would wait on forever.
            with open(log_path, "wb") as log:
                result = subprocess.run(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=log,
                    env=env,
                    timeout=self.connect_timeout + 5,
                )
        except subprocess.TimeoutExpired:
            self._cleanup()
            raise RemoteConnectionError(
                f"Timed out connecting to {self.display_name} after {self.connect_timeout:g}s"
            ) from None
        except OSError as e:
            self._cleanup()
            raise RemoteConnectionError(f"Failed to execute ssh: {e}") from e

        if result.returncode != 0:
            message = log_path.read_text(errors="replace").strip() or "Connection failed"
            self._cleanup()
            raise RemoteConnectionError(f"Cannot connect to {self.display_name}: {message}")

    def close(self) -> None:
        if self._control_dir is None:
            return
        argv, env = self._ssh()
        try:
            subprocess.run(
                argv + ["-o", f"ControlPath={self._control_path}", "-O", "exit", self.connection.target],
                capture_output=True,
                env=env,
                timeout=self.connect_timeout + 5,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not stop SSH master for %s: %s", self.display_name, e)
        self._cleanup()

    def _cleanup(self) -> None:
        if self._control_dir is not None:
            shutil.rmtree(self._control_dir, ignore_errors=True)
            self._control_dir = None

    def run(self, remote_cmd: str, input: bytes | None = None) -> subprocess.CompletedProcess:
        """Run a shell command over the open session."""
        argv, env = self._ssh()
        argv += self._session_args() + [self.connection.target, remote_cmd]
        try:
            result = subprocess.run(argv, input=input, capture_output=True, env=env)
        except OSError as e:
            raise RemoteConnectionError(f"Failed to execute ssh: {e}") from e
        if result.returncode == SSH_CONNECTION_FAILED:
            raise RemoteConnectionError(
                f"Lost connection to {self.display_name}: {_stderr(result.stderr)}"
            )
        return result

    def probe(self) -> str:
        """Check the session and return the remote ``uname -a``."""
        result = self.run(f"echo {CONNECTED_MARKER} && uname -a")
        out = result.stdout.decode(errors="replace")
        if result.returncode != 0 or CONNECTED_MARKER not in out:
            raise RemoteConnectionError(_stderr(result.stderr) or "Connection failed")
        lines = [line.strip() for line in out.splitlines() if CONNECTED_MARKER not in line]
        return next((line for line in lines if line), "")

    # -- files ---------------------------------------------------------

    def stat(self, path: str) -> RemoteStat | None:
        q = remote_quote(path)
        result = self.run(
            f"if [ -f {q} ]; then stat -c '%Y %s' {q} 2>/dev/null || stat -f '%m %z' {q}; "
            f"else echo {MISSING_MARKER}; fi"
        )
        out = result.stdout.decode(errors="replace").strip()
        if result.returncode != 0:
            raise RemoteFileError(f"stat failed: {_stderr(result.stderr)}", path)
        if out == MISSING_MARKER:
            return None
        try:
            mtime, size = out.split()[:2]
            return RemoteStat(mtime=float(mtime), size=int(size))
        except ValueError:
            raise RemoteFileError(f"unexpected stat output {out!r}", path) from None

    def read_file(self, path: str, progress: ProgressCallback | None = None) -> bytes:
        result = self.run(f"cat {remote_quote(path)}")
        if result.returncode != 0:
            raise RemoteFileError(f"read failed: {_stderr(result.stderr)}", path)
        if progress is not None:
            progress(len(result.stdout), len(result.stdout))
        return result.stdout

    def write_file(
        self,
        path: str,
        data: bytes,
        mtime: float | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        q = remote_quote(path)
        tmp = remote_quote(path + ".ai-toolbox.tmp")
        remote_cmd = f'mkdir -p "$(dirname {q})" && cat > {tmp} && mv -f {tmp} {q}'
        if mtime is not None:
            remote_cmd += f" && (touch -m -d @{int(mtime)} {q} 2>/dev/null || true)"

        argv, env = self._ssh()
        argv += self._session_args() + [self.connection.target, remote_cmd]
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise RemoteConnectionError(f"Failed to execute ssh: {e}") from e

        total = len(data)
        try:
            sent = 0
            try:
                while sent < total:
                    chunk = data[sent : sent + CHUNK_SIZE]
                    proc.stdin.write(chunk)
                    sent += len(chunk)
                    if progress is not None:
                        progress(sent, total)
                proc.stdin.close()
            except BrokenPipeError:
                # The remote side gave up early; its exit status says why.
                pass
            stderr = proc.stderr.read()
            returncode = proc.wait()
        except BaseException:
            proc.kill()
            proc.wait()
            raise

        if returncode == SSH_CONNECTION_FAILED:
            raise RemoteConnectionError(f"Lost connection to {self.display_name}: {_stderr(stderr)}")
        if returncode != 0:
            raise RemoteFileError(f"write failed: {_stderr(stderr) or 'exit ' + str(returncode)}", path)
        if progress is not None and total == 0:
            progress(0, 0)

    @property
    def display_name(self) -> str:
        return f"ssh {self.connection.target}:{self.connection.port}"


def _stderr(raw: bytes | None) -> str:
    return (raw or b"").decode(errors="replace").strip()
