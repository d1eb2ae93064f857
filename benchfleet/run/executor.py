"""Install DataFusion, fetch ClickBench and run one variant on one instance.

Remote layout (paths relative to the login user's home directory)::

    benchfleet/install/<marker>              install marker per (method, ref, native)
    benchfleet/datafusion/                   DataFusion checkout (compile method)
    benchfleet/ClickBench/                   ClickBench checkout
    benchfleet/results/<run-id>/<variant>/   output.log, timing.json, results/, outcome.json
"""

from __future__ import annotations

import json
import re
import shlex
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from rich.console import Console

from ..common.enums import InstallMethod, Outcome, Variant, VariantStatus
from ..infra.ssh import RemoteHost
from ..models import InstanceRecord, VariantOutcome
from ..util import Timer

if TYPE_CHECKING:
    from ..config import RunConfiguration

console = Console()

REMOTE_ROOT = "benchfleet"
DATAFUSION_REPO = "https://github.com/apache/datafusion.git"
OUTCOME_FILE = "outcome.json"

HostFactory = Callable[["RunConfiguration", str], RemoteHost]
OutputCallback = Callable[[str], None]


def _print_plain(message: str) -> None:
    console.print(message, markup=False, highlight=False)


def remote_results_dir(identity: str, variant: Variant | str) -> str:
    """Directory holding one variant's artifacts, relative to the remote home."""
    return f"{REMOTE_ROOT}/results/{identity}/{variant}"


def install_marker_name(config: RunConfiguration) -> str:
    """Marker file name; a different method, ref or native flag reinstalls."""
    if config.install_method is InstallMethod.PACKAGE:
        key = "package"
    else:
        native = "native" if config.enable_native_opts else "generic"
        key = f"compile-{config.datafusion_ref}-{native}"
    return re.sub(r"[^A-Za-z0-9._-]+", "_", key)


def _fetch_ref(checkout_dir: str, repository: str, ref: str) -> str:
    # init + fetch works for branches, tags and commit ids alike
    return f"""\
if [ ! -d "{checkout_dir}/.git" ]; then
  rm -rf "{checkout_dir}"
  git init -q "{checkout_dir}"
fi
cd "{checkout_dir}"
git remote remove origin 2>/dev/null || true
git remote add origin {shlex.quote(repository)}
git fetch -q --depth 1 origin {shlex.quote(ref)}
git checkout -q --force FETCH_HEAD
echo "Checked out {ref} at $(git rev-parse --short HEAD)"
"""


def install_script(config: RunConfiguration) -> str:
    """Shell script installing ``datafusion-cli`` on the instance."""
    marker = f"$HOME/{REMOTE_ROOT}/install/{install_marker_name(config)}"
    header = f"""\
set -euo pipefail
MARKER="{marker}"
if [ -f "$MARKER" ]; then
  echo "DataFusion already installed ($(cat "$MARKER"))"
  exit 0
fi
mkdir -p "$HOME/{REMOTE_ROOT}/install"
sudo apt-get update -qq
sudo DEBIAN_FRONTEND=noninteractive apt-get install -y -qq \\
  build-essential git curl unzip pkg-config libssl-dev cmake protobuf-compiler
"""

    if config.install_method is InstallMethod.PACKAGE:
        body = """\
if ! command -v brew >/dev/null 2>&1 && [ ! -x /home/linuxbrew/.linuxbrew/bin/brew ]; then
  NONINTERACTIVE=1 /bin/bash -c "$(curl -fsSL https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh)"
fi
eval "$(/home/linuxbrew/.linuxbrew/bin/brew shellenv)"
brew install datafusion
sudo ln -sf "$(brew --prefix)/bin/datafusion-cli" /usr/local/bin/datafusion-cli
"""
    else:
        rustflags = (
            'export RUSTFLAGS="-C target-cpu=native"\n'
            if config.enable_native_opts
            else "unset RUSTFLAGS\n"
        )
        body = (
            """\
if [ ! -x "$HOME/.cargo/bin/cargo" ]; then
  curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y --profile minimal
fi
source "$HOME/.cargo/env"
"""
            + _fetch_ref(
                f"$HOME/{REMOTE_ROOT}/datafusion", DATAFUSION_REPO, config.datafusion_ref
            )
            + rustflags
            + """\
cargo build --release -p datafusion-cli
sudo install -m 0755 target/release/datafusion-cli /usr/local/bin/datafusion-cli
"""
        )

    footer = """\
datafusion-cli --version
echo "{method} {ref} native={native} $(date -u +%Y-%m-%dT%H:%M:%SZ)" > "$MARKER"
""".format(
        method=config.install_method,
        ref=config.datafusion_ref,
        native=str(config.enable_native_opts).lower(),
    )
    return header + body + footer


def fetch_workload_script(config: RunConfiguration) -> str:
    """Shell script cloning or refreshing ClickBench at the configured ref."""
    return "set -euo pipefail\n" + _fetch_ref(
        f"$HOME/{REMOTE_ROOT}/ClickBench", config.clickbench_repo, config.clickbench_ref
    )


def execute_script(variant: Variant, identity: str) -> str:
    """Shell script running ``<variant>/benchmark.sh`` and capturing its artifacts."""
    out_dir = f"$HOME/{remote_results_dir(identity, variant)}"
    return f"""\
set -uo pipefail
OUT="{out_dir}"
rm -rf "$OUT"
mkdir -p "$OUT/results"
cd "$HOME/{REMOTE_ROOT}/ClickBench/{variant}" || {{ echo "No ClickBench directory for {variant}"; exit 1; }}
if [ ! -f benchmark.sh ]; then
  echo "benchmark.sh missing for {variant}"
  exit 1
fi
export PATH="/usr/local/bin:$PATH"
START=$(date +%s)
bash ./benchmark.sh 2>&1 | tee "$OUT/output.log"
STATUS=${{PIPESTATUS[0]}}
END=$(date +%s)
cat > "$OUT/timing.json" <<TIMING
{{"variant": "{variant}", "run_id": "{identity}", "started_at": $START, "finished_at": $END, "elapsed_s": $((END - START)), "exit_code": $STATUS}}
TIMING
if ls results/*.json >/dev/null 2>&1; then
  cp results/*.json "$OUT/results/"
fi
exit $STATUS
"""


class RemoteExecutor:
    """Drives install, fetch and execute for (instance, variant) pairs."""

    install_timeout_s = 3 * 3600
    fetch_timeout_s = 900
    execute_timeout_s = 6 * 3600

    def __init__(self, host_factory: HostFactory = RemoteHost.for_config):
        self.host_factory = host_factory

    def install_and_run(
        self,
        instance: InstanceRecord,
        config: RunConfiguration,
        variant: Variant,
        identity: str,
        output: OutputCallback | None = None,
    ) -> VariantOutcome:
        """
        Run the three sub-phases for one variant on one instance.

        The first failing sub-phase decides the outcome and the remaining
        ones are skipped. Nothing is retried. The outcome is also written to
        the instance so a later ``collect`` can read it back.
        """
        log = output or _print_plain
        instance.variant_status[variant] = VariantStatus.RUNNING

        if not instance.public_ip:
            result = VariantOutcome(
                variant, Outcome.INSTALL_FAILED, "instance has no public address"
            )
            instance.record_outcome(result)
            return result

        host = self.host_factory(config, instance.public_ip)
        steps: list[tuple[str, Outcome, str, float]] = [
            ("install", Outcome.INSTALL_FAILED, install_script(config), self.install_timeout_s),
            (
                "fetch workload",
                Outcome.WORKLOAD_FETCH_FAILED,
                fetch_workload_script(config),
                self.fetch_timeout_s,
            ),
            (
                f"execute {variant}",
                Outcome.EXECUTION_FAILED,
                execute_script(variant, identity),
                self.execute_timeout_s,
            ),
        ]

        outcome = Outcome.SUCCEEDED
        detail = ""
        with Timer(f"{instance.label}/{variant}") as timer:
            for name, failure, script, timeout in steps:
                log(f"{variant}: {name}")
                command_result = host.run(
                    f"bash -c {shlex.quote(script)}",
                    timeout=timeout,
                    stream_callback=self._stream_to(log),
                )
                if not command_result["success"]:
                    outcome = failure
                    detail = self._failure_detail(name, command_result)
                    log(f"{variant}: {name} failed ({detail})")
                    break

        result = VariantOutcome(variant, outcome, detail, timer.elapsed)
        instance.record_outcome(result)
        self._write_outcome_marker(host, identity, result, log)
        return result

    def probe_outcome(
        self,
        instance: InstanceRecord,
        config: RunConfiguration,
        identity: str,
        variant: Variant,
    ) -> VariantOutcome | None:
        """Read the outcome a previous process recorded on the instance."""
        if not instance.public_ip:
            return None
        host = self.host_factory(config, instance.public_ip)
        raw = host.read_file(f"{remote_results_dir(identity, variant)}/{OUTCOME_FILE}")
        if not raw:
            return None
        try:
            data = json.loads(raw)
            result = VariantOutcome(
                variant,
                Outcome(data["outcome"]),
                data.get("detail", ""),
                float(data.get("elapsed_s", 0.0)),
            )
        except (ValueError, KeyError, TypeError):
            return None
        instance.record_outcome(result)
        return result

    @staticmethod
    def _stream_to(log: OutputCallback) -> Callable[[str, str], None]:
        def callback(line: str, stream_name: str) -> None:
            log(f"[stderr] {line}" if stream_name == "stderr" else line)

        return callback

    @staticmethod
    def _failure_detail(step: str, command_result: dict[str, Any]) -> str:
        stderr_lines = [
            line for line in str(command_result.get("stderr", "")).splitlines() if line.strip()
        ]
        last = stderr_lines[-1] if stderr_lines else ""
        detail = f"{step} exited with {command_result.get('returncode')}"
        return f"{detail}: {last}" if last else detail

    @staticmethod
    def _write_outcome_marker(
        host: RemoteHost, identity: str, result: VariantOutcome, log: OutputCallback
    ) -> None:
        payload = json.dumps(
            {
                "variant": str(result.variant),
                "outcome": str(result.outcome),
                "detail": result.detail,
                "elapsed_s": round(result.elapsed_s, 3),
            }
        )
        directory = remote_results_dir(identity, result.variant)
        marker = host.run(
            f"mkdir -p {directory} && printf '%s\\n' {shlex.quote(payload)} > {directory}/{OUTCOME_FILE}",
            timeout=60,
        )
        if not marker["success"]:
            log(f"{result.variant}: could not record outcome on instance")
