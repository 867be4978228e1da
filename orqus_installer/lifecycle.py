"""
Process lifecycle for an installation: ordered startup with readiness
gating, fail-together supervision, shutdown and upgrade.

Startup order is orqus-reth -> orqusbft -> cometbft. Each process must answer
its readiness probe before the next one is launched: orqusbft calls the
Engine API as soon as it starts, and cometbft proposes through orqusbft's
ABCI socket.
"""
import json
import logging
import os
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import psutil
import requests
import yaml

from .commands import DockerCLI
from .config import InstallerConfig
from .errors import InvalidConfiguration, ProcessStartFailed, UnsupportedEnvironment
from .renderer import ConfigRenderer
from .roles import InstallMode
from .state import (
    InstallationLayout, InstallationRecord, LifecycleState, load_record, save_record,
)
from .upgrade import BinaryUpgrade, ContainerUpgrade

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 30
STOP_SIGNALS = (signal.SIGTERM, signal.SIGHUP)
# seconds; psutil reports start times rounded to clock ticks
CREATE_TIME_TOLERANCE = 0.05

ALLOWED_TRANSITIONS = {
    LifecycleState.UNINSTALLED: {LifecycleState.PROVISIONED},
    LifecycleState.PROVISIONED: {LifecycleState.PROVISIONED, LifecycleState.RUNNING, LifecycleState.UPGRADING},
    LifecycleState.RUNNING: {LifecycleState.STOPPED, LifecycleState.UPGRADING},
    LifecycleState.STOPPED: {LifecycleState.STOPPED, LifecycleState.RUNNING, LifecycleState.UPGRADING},
    # an interrupted upgrade may be retried
    LifecycleState.UPGRADING: {LifecycleState.UPGRADING, LifecycleState.RUNNING, LifecycleState.STOPPED},
}


# Readiness probes

def jsonrpc_ready(url) -> bool:
    payload = json.dumps({"jsonrpc": "2.0", "method": "web3_clientVersion", "params": [], "id": 1})
    try:
        response = requests.post(url, headers={'Content-Type': 'application/json'}, data=payload, timeout=2)
        return response.status_code == 200
    except requests.RequestException:
        return False


def http_ready(url) -> bool:
    try:
        return requests.get(url, timeout=2).status_code == 200
    except requests.RequestException:
        return False


def tcp_ready(host, port) -> bool:
    try:
        with socket.create_connection((host, port), timeout=2):
            return True
    except OSError:
        return False


@dataclass
class ReadinessProbe:
    """Polls check() with exponential backoff, up to attempts times"""
    description: str
    check: Callable[[], bool]
    attempts: int = 30
    initial_delay: float = 0.5
    max_delay: float = 5.0

    def delays(self):
        delay = self.initial_delay
        for _ in range(self.attempts):
            yield delay
            delay = min(delay * 2, self.max_delay)


@dataclass
class ProcessSpec:
    name: str
    argv: List[str]
    log_file: Path
    probe: Optional[ReadinessProbe] = None


# Supervision

class ProcessSupervisor:
    """
    Launches the managed processes and keeps them together: when one exits,
    the others are stopped.
    """

    def __init__(self, layout: InstallationLayout, popen=subprocess.Popen, sleep=time.sleep):
        self.layout = layout
        self.popen = popen
        self.sleep = sleep
        self.processes: Dict[str, subprocess.Popen] = {}

    def launch(self, spec: ProcessSpec, detach=False):
        spec.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(spec.log_file, 'ab') as log:
            process = self.popen(
                [str(a) for a in spec.argv], stdout=log, stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL, start_new_session=detach,
            )
        self.processes[spec.name] = process
        pid_file = self.layout.pid_file(spec.name)
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(pid_record(process.pid))
        logger.info(f"Started {spec.name} (PID: {process.pid})")
        return process

    def wait_ready(self, spec: ProcessSpec, process):
        if spec.probe is None:
            return
        for delay in spec.probe.delays():
            if process.poll() is not None:
                raise ProcessStartFailed(
                    f"{spec.name} exited with code {process.returncode} during startup",
                    hint=f"See {spec.log_file}",
                )
            if spec.probe.check():
                logger.info(f"{spec.name} is ready ({spec.probe.description})")
                return
            self.sleep(delay)
        raise ProcessStartFailed(
            f"{spec.name} did not become ready: {spec.probe.description}",
            hint=f"See {spec.log_file}",
        )

    def start_all(self, specs: List[ProcessSpec], detach=False):
        """Start specs in order, gating each on its readiness probe."""
        total = len(specs)
        for i, spec in enumerate(specs, 1):
            logger.info(f"[{i}/{total}] Starting {spec.name}...")
            process = self.launch(spec, detach=detach)
            try:
                self.wait_ready(spec, process)
            except ProcessStartFailed:
                logger.error(f"{spec.name} failed to start, stopping the processes already started")
                self.stop_all()
                raise

    def wait(self, poll_interval=1.0) -> int:
        """
        Block until any managed process exits, then stop the rest.
        Returns the exit code of the process that exited first, or 0 when
        interrupted by Ctrl+C, SIGTERM or SIGHUP.
        """
        previous = _trap_stop_signals()
        try:
            while True:
                for name, process in self.processes.items():
                    code = process.poll()
                    if code is not None:
                        logger.error(f"{name} exited with code {code}; stopping the remaining processes")
                        self.stop_all()
                        return code
                self.sleep(poll_interval)
        except (KeyboardInterrupt, StopRequested) as e:
            _restore_signals(previous)
            logger.info(f"Shutting down ({str(e) or 'interrupted'})...")
            self.stop_all()
            return 0
        finally:
            _restore_signals(previous)

    def stop_all(self, timeout=STOP_TIMEOUT):
        """Signal every process (last started first), wait for all, kill stragglers."""
        running = [(n, p) for n, p in reversed(list(self.processes.items())) if p.poll() is None]
        for name, process in running:
            logger.info(f"Stopping {name}...")
            process.terminate()
        deadline = time.monotonic() + timeout
        for name, process in running:
            try:
                process.wait(timeout=max(0.0, deadline - time.monotonic()))
            except subprocess.TimeoutExpired:
                logger.warning(f"{name} did not exit after {timeout}s, killing it")
                process.kill()
                process.wait()
        for name in self.processes:
            self.layout.pid_file(name).unlink(missing_ok=True)
        logger.info("Shutdown complete")


class StopRequested(Exception):
    """Raised from a SIGTERM/SIGHUP handler to unwind ProcessSupervisor.wait()"""


def _raise_stop(signum, frame):
    raise StopRequested(signal.Signals(signum).name)


def _trap_stop_signals() -> Dict[int, object]:
    # handlers can only be installed from the main thread
    if threading.current_thread() is not threading.main_thread():
        return {}
    return {signum: signal.signal(signum, _raise_stop) for signum in STOP_SIGNALS}


def _restore_signals(previous: Dict[int, object]):
    for signum, handler in previous.items():
        signal.signal(signum, signal.SIG_DFL if handler is None else handler)
    previous.clear()


def pid_record(pid) -> str:
    """PID file content: the PID and, when readable, the process start time."""
    try:
        return f"{pid}\n{psutil.Process(pid).create_time()!r}\n"
    except psutil.Error:
        return f"{pid}\n"


def read_pid_file(pid_file: Path) -> Tuple[Optional[int], Optional[float]]:
    try:
        fields = pid_file.read_text().split()
        return int(fields[0]), (float(fields[1]) if len(fields) > 1 else None)
    except (OSError, ValueError, IndexError):
        return None, None


def read_pid(pid_file: Path) -> Optional[int]:
    return read_pid_file(pid_file)[0]


def managed_process(name, pid_file: Path) -> Optional[psutil.Process]:
    """
    The live process recorded in pid_file, or None when the PID is gone or now
    belongs to some other program. Recorded start times must match; PID files
    without one must point at a process whose argv[0] is the managed binary.
    """
    pid, created = read_pid_file(pid_file)
    if pid is None:
        return None
    try:
        process = psutil.Process(pid)
        if created is not None:
            if abs(process.create_time() - created) > CREATE_TIME_TOLERANCE:
                return None
        else:
            cmdline = process.cmdline()
            if not cmdline or os.path.basename(cmdline[0]) != name:
                return None
        if process.status() == psutil.STATUS_ZOMBIE:
            return None
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
    return process


# Lifecycle


@dataclass
class ProcessStatus:
    name: str
    pid: Optional[int]
    running: bool
    endpoint: str = ""


@dataclass
class UpgradeResult:
    version: str
    mode: InstallMode
    restarted: bool
    replaced: List[str] = field(default_factory=list)


class LifecycleManager:
    PROCESS_ORDER = ('orqus-reth', 'orqusbft', 'cometbft')

    def __init__(self, config: InstallerConfig, layout: InstallationLayout,
                 docker: DockerCLI = None, supervisor: ProcessSupervisor = None):
        self.config = config
        self.layout = layout
        self.docker = docker or DockerCLI()
        self.supervisor = supervisor or ProcessSupervisor(layout)

    # State

    def record(self) -> InstallationRecord:
        record = load_record(self.layout)
        if record is None:
            raise InvalidConfiguration(
                f"No existing installation found at {self.layout.root}",
                hint="Run install first",
            )
        return record

    def current_state(self) -> LifecycleState:
        record = load_record(self.layout)
        if record is None:
            return LifecycleState.UNINSTALLED
        if record.state is LifecycleState.RUNNING and not self.is_running(record.mode):
            return LifecycleState.STOPPED
        return record.state

    def transition(self, target: LifecycleState) -> InstallationRecord:
        record = self.record()
        current = self.current_state()
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidConfiguration(f"Cannot go from {current.value} to {target.value}")
        record.state = target
        save_record(self.layout, record)
        return record

    def is_running(self, mode: InstallMode = None) -> bool:
        mode = mode or self.config.mode
        if mode is InstallMode.DOCKER:
            result = self.docker.compose(self.layout.root, 'ps', '--status', 'running', '-q')
            return result.ok and bool(result.stdout.strip())
        return any(status.running for status in self.process_status())

    def process_status(self) -> List[ProcessStatus]:
        cfg = self.config
        endpoints = {
            'orqus-reth': f"http://127.0.0.1:{cfg.reth_http_port}",
            'orqusbft': f"tcp://127.0.0.1:{cfg.orqusbft_abci_port}",
            'cometbft': f"http://127.0.0.1:{cfg.cometbft_rpc_port}",
        }
        statuses = []
        for name in self.PROCESS_ORDER:
            pid_file = self.layout.pid_file(name)
            statuses.append(ProcessStatus(
                name=name, pid=read_pid(pid_file), running=managed_process(name, pid_file) is not None,
                endpoint=endpoints[name],
            ))
        return statuses

    # Process specs

    def process_specs(self) -> List[ProcessSpec]:
        cfg = self.config
        layout = self.layout
        renderer = ConfigRenderer(cfg, layout)

        reth_argv = [layout.binary('orqus-reth')] + renderer.reth_arguments(
            layout.reth_data, layout.execution_genesis, layout.jwt_secret, renderer.host_ports(),
        )
        return [
            ProcessSpec(
                name='orqus-reth',
                argv=reth_argv,
                log_file=layout.log_file('reth'),
                probe=ReadinessProbe(
                    f"JSON-RPC on :{cfg.reth_http_port} and Engine API on :{cfg.reth_engine_port}",
                    lambda: jsonrpc_ready(f"http://127.0.0.1:{cfg.reth_http_port}")
                    and tcp_ready('127.0.0.1', cfg.reth_engine_port),
                ),
            ),
            ProcessSpec(
                name='orqusbft',
                argv=[layout.binary('orqusbft'), '-config', layout.orqusbft_config],
                log_file=layout.log_file('orqusbft'),
                probe=ReadinessProbe(
                    f"ABCI socket on :{cfg.orqusbft_abci_port}",
                    lambda: tcp_ready('127.0.0.1', cfg.orqusbft_abci_port),
                ),
            ),
            ProcessSpec(
                name='cometbft',
                argv=[layout.binary('cometbft'), 'start', '--home', layout.cometbft_home,
                      f"--proxy_app=tcp://127.0.0.1:{cfg.orqusbft_abci_port}"],
                log_file=layout.log_file('cometbft'),
                probe=ReadinessProbe(
                    f"RPC /health on :{cfg.cometbft_rpc_port}",
                    lambda: http_ready(f"http://127.0.0.1:{cfg.cometbft_rpc_port}/health"),
                ),
            ),
        ]

    # Start / stop

    def start(self, detach=False) -> int:
        """
        Start the node. In binary mode without detach this blocks while the
        processes run and returns the exit code of the first one to exit.
        """
        record = self.record()
        if self.current_state() is LifecycleState.UPGRADING:
            raise InvalidConfiguration("An upgrade did not finish; run upgrade again before starting")
        if self.is_running(record.mode):
            raise InvalidConfiguration("The node is already running", hint="Run stop first")

        if record.mode is InstallMode.DOCKER:
            self._start_containers()
            self.transition(LifecycleState.RUNNING)
            return 0

        missing = self.layout.missing_binaries()
        if missing:
            raise InvalidConfiguration(f"Missing binaries: {', '.join(missing)}", hint="Run install again")

        logger.info("Starting Orqus Chain...")
        self.supervisor.start_all(self.process_specs(), detach=detach)
        self.transition(LifecycleState.RUNNING)
        if detach:
            return 0
        code = self.supervisor.wait()
        self.transition(LifecycleState.STOPPED)
        return code

    def stop(self, best_effort=False):
        """Stop every managed process. With best_effort, failures are logged only."""
        record = load_record(self.layout)
        mode = record.mode if record else self.layout.detect_mode()
        logger.info("Stopping Orqus Chain...")
        if mode is InstallMode.DOCKER:
            result = self.docker.compose(self.layout.root, 'down')
            if not result.ok:
                message = f"docker compose down failed: {result.stderr.strip()}"
                if not best_effort:
                    raise ProcessStartFailed(message)
                logger.warning(message)
        else:
            self._stop_recorded_processes()
        if record is not None and record.state in (LifecycleState.RUNNING, LifecycleState.STOPPED):
            record.state = LifecycleState.STOPPED
            save_record(self.layout, record)
        logger.info("Stopped")

    def _stop_recorded_processes(self, timeout=STOP_TIMEOUT):
        processes = []
        for name in reversed(self.PROCESS_ORDER):
            pid_file = self.layout.pid_file(name)
            process = managed_process(name, pid_file)
            if process is not None:
                logger.info(f"Stopping {name} (PID: {process.pid})...")
                try:
                    process.terminate()
                    processes.append(process)
                except psutil.NoSuchProcess:
                    pass
            elif pid_file.exists():
                logger.info(f"Removing stale {pid_file.name}")
            pid_file.unlink(missing_ok=True)

        _, alive = psutil.wait_procs(processes, timeout=timeout)
        for process in alive:
            logger.warning(f"PID {process.pid} did not exit after {timeout}s, killing it")
            try:
                process.kill()
            except psutil.NoSuchProcess:
                pass
        psutil.wait_procs(alive, timeout=5)


    def _start_containers(self):
        if not self.docker.compose_command():
            raise UnsupportedEnvironment("Docker Compose is not installed")
        if not (self.layout.reth_data / 'db').exists():
            logger.info("Initializing orqus-reth...")
            image = self.manifest_image('orqus-reth')
            result = self.docker.run_container(
                image, ['init', '--datadir', '/data', '--chain', '/genesis.json'],
                volumes=[f"{self.layout.reth_data}:/data", f"{self.layout.execution_genesis}:/genesis.json:ro"],
            )
            if not result.ok:
                logger.warning(f"orqus-reth init failed: {result.stderr.strip()}")
        result = self.docker.compose(self.layout.root, 'up', '-d')
        if not result.ok:
            raise ProcessStartFailed(f"docker compose up failed: {result.stderr.strip()}")
        logger.info("Containers started")

    def manifest_image(self, service) -> str:
        with open(self.layout.compose_file, 'r') as f:
            manifest = yaml.safe_load(f)
        return manifest['services'][service]['image']

    # Upgrade

    def upgrade(self, fetcher, platform) -> UpgradeResult:
        """
        Upgrade to the latest (or pinned) release.

        Binary mode replaces the binary set with rollback and leaves the node
        stopped; container mode pulls, rewrites the manifest and restarts.
        """
        record = self.record()
        if record.mode is InstallMode.BINARY:
            platform.require_release_binaries()
        elif not self.docker.available() or not self.docker.compose_command():
            raise UnsupportedEnvironment("Docker and Docker Compose are required for a docker-mode upgrade")

        release = fetcher.resolve_release(allow_fallback=False)

        self.transition(LifecycleState.UPGRADING)
        self.stop(best_effort=True)

        if record.mode is InstallMode.DOCKER:
            try:
                replaced = ContainerUpgrade(self.layout, fetcher, self.docker).run(release)
            except Exception:
                self._finish_upgrade(LifecycleState.STOPPED)
                raise
            self._finish_upgrade(LifecycleState.RUNNING)
            return UpgradeResult(release.version, record.mode, restarted=True, replaced=replaced)

        binary_upgrade = BinaryUpgrade(self.layout, fetcher)
        try:
            binary_upgrade.recover_interrupted()
            replaced = binary_upgrade.run(release)
        finally:
            self._finish_upgrade(LifecycleState.STOPPED)
        logger.info(f"Upgrade complete. Start the chain with: {self.layout.start_script}")
        return UpgradeResult(release.version, record.mode, restarted=False, replaced=replaced)

    def _finish_upgrade(self, state: LifecycleState):
        record = self.record()
        record.state = state
        save_record(self.layout, record)
