"""SSH/SCP access to one provisioned instance."""

import shlex
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..debug import is_debug_enabled
from ..util import safe_command

if TYPE_CHECKING:
    from ..config import RunConfiguration

StreamCallback = Callable[[str, str], None]


class RemoteHost:
    """Runs commands on and copies files from one instance address."""

    def __init__(
        self,
        public_ip: str,
        ssh_private_key_path: str | None = None,
        ssh_user: str = "ubuntu",
        ssh_port: int = 22,
    ):
        self.public_ip = public_ip
        self.ssh_private_key_path = ssh_private_key_path
        self.ssh_user = ssh_user
        self.ssh_port = ssh_port

    @property
    def target(self) -> str:
        return f"{self.ssh_user}@{self.public_ip}"

    def _key_option(self) -> str:
        if not self.ssh_private_key_path:
            return ""
        key_path = Path(self.ssh_private_key_path).expanduser()
        return f" -i {shlex.quote(str(key_path))}"

    def _get_ssh_command_prefix(self) -> str:
        """Get SSH command prefix with key and port if configured."""
        ssh_opts = (
            "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null "
            "-o LogLevel=ERROR -o ConnectTimeout=5 -o BatchMode=yes"
        )
        ssh_opts += self._key_option()
        if self.ssh_port != 22:
            ssh_opts += f" -p {self.ssh_port}"
        return f"ssh {ssh_opts}"

    def _get_scp_command_prefix(self) -> str:
        scp_opts = (
            "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null "
            "-o LogLevel=ERROR -o BatchMode=yes"
        )
        scp_opts += self._key_option()
        if self.ssh_port != 22:
            scp_opts += f" -P {self.ssh_port}"
        return f"scp {scp_opts}"

    def is_reachable(self) -> bool:
        """One SSH round trip."""
        result = safe_command(
            f"{self._get_ssh_command_prefix()} {self.target} {shlex.quote('echo ready')}",
            timeout=15,
        )
        return bool(result["success"])

    def wait_for_ssh(
        self,
        timeout: float = 300,
        interval: float = 10,
        sleep: Callable[[float], None] = time.sleep,
    ) -> bool:
        """Poll until SSH answers or ``timeout`` seconds have passed."""
        deadline = time.monotonic() + timeout
        while True:
            if self.is_reachable():
                return True
            if time.monotonic() + interval > deadline:
                return False
            sleep(interval)

    def run(
        self,
        command: str,
        timeout: float | None = 3600,
        stream_callback: StreamCallback | None = None,
    ) -> dict[str, Any]:
        """Run a shell command on the instance.

        Args:
            command: Command line executed by the remote login shell
            timeout: Seconds before the local ssh process is killed
            stream_callback: Receives (line, stream_name) as output arrives;
                used to tag lines with the instance during parallel runs

        Returns:
            Dictionary with success, stdout, stderr, returncode, elapsed_s, command
        """
        ssh_command = f"{self._get_ssh_command_prefix()} {self.target} {shlex.quote(command)}"

        if stream_callback is None:
            return safe_command(ssh_command, timeout=timeout)

        if is_debug_enabled():
            stream_callback(f"[DEBUG] Command ({timeout}s): {ssh_command}", "stdout")
        return self._run_streaming(ssh_command, timeout, stream_callback)

    def _run_streaming(
        self,
        ssh_command: str,
        timeout: float | None,
        stream_callback: StreamCallback,
    ) -> dict[str, Any]:
        """Execute SSH command while streaming stdout/stderr lines to callback."""
        start_time = time.time()

        try:
            process = subprocess.Popen(
                ssh_command,
                shell=True,  # nosec B602
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            return {
                "success": False,
                "stdout": "",
                "stderr": str(exc),
                "returncode": -1,
                "elapsed_s": time.time() - start_time,
                "command": ssh_command,
            }

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        def reader(pipe: Any, label: str, collector: list[str]) -> None:
            try:
                for raw_line in iter(pipe.readline, ""):
                    collector.append(raw_line)
                    stream_callback(raw_line.rstrip("\r\n"), label)
            finally:
                pipe.close()

        threads = [
            threading.Thread(
                target=reader, args=(pipe, label, lines), daemon=True
            )
            for pipe, label, lines in (
                (process.stdout, "stdout", stdout_lines),
                (process.stderr, "stderr", stderr_lines),
            )
            if pipe is not None
        ]
        for thread in threads:
            thread.start()

        timed_out = False
        try:
            returncode = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            process.kill()
            returncode = process.wait()
            timeout_message = f"Command timed out after {timeout}s"
            stderr_lines.append(timeout_message + "\n")
            stream_callback(timeout_message, "stderr")

        for thread in threads:
            thread.join()

        return {
            "success": returncode == 0 and not timed_out,
            "stdout": "".join(stdout_lines),
            "stderr": "".join(stderr_lines),
            "returncode": -1 if timed_out else returncode,
            "elapsed_s": time.time() - start_time,
            "command": ssh_command,
        }

    def read_file(self, remote_path: str) -> str | None:
        """Return a remote file's contents, or None if it cannot be read."""
        result = self.run(f"cat {remote_path}", timeout=60)
        return result["stdout"] if result["success"] else None

    def copy_dir_from(self, remote_dir: str, local_dir: Path) -> dict[str, Any]:
        """Copy a remote directory to ``local_dir``, which must not exist yet."""
        local_dir.parent.mkdir(parents=True, exist_ok=True)
        scp_command = (
            f"{self._get_scp_command_prefix()} -r "
            f"{self.target}:{remote_dir.rstrip('/')} {shlex.quote(str(local_dir))}"
        )
        return safe_command(scp_command, timeout=900)

    @classmethod
    def for_config(cls, config: "RunConfiguration", public_ip: str) -> "RemoteHost":
        """Build a host using the key and login user of a run configuration."""
        return cls(
            public_ip,
            ssh_private_key_path=config.private_key_file,
            ssh_user=config.ssh_user,
        )
