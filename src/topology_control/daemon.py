import signal
import time

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .driver import PassReport, ReconciliationDriver
from .errors import TopologyFileError, ValidationError
from .models import DesiredTopology, WorkloadState
from .observability import ObservabilityAttachment, write_file_sd
from .platform import DockerPlatform, Platform
from .settings import get_settings

settings = get_settings()

STATE_STYLES = {
    WorkloadState.CONVERGED: "green",
    WorkloadState.PENDING: "cyan",
    WorkloadState.APPLYING: "blue",
    WorkloadState.DEGRADED: "bold red",
    WorkloadState.ABSENT: "dim",
}


def render_report(report: PassReport) -> Table:
    table = Table(title="Workload status")
    table.add_column("Namespace")
    table.add_column("Workload")
    table.add_column("State")
    table.add_column("Detail", overflow="fold")
    for (namespace, name), state in sorted(report.statuses.items()):
        style = STATE_STYLES.get(state, "")
        table.add_row(namespace, name, f"[{style}]{state.value}[/{style}]", report.errors.get((namespace, name), ""))
    return table


class TopologyDaemon:
    def __init__(self, platform: Platform | None = None):
        self.console = Console()
        self.running = False
        self.platform = platform or DockerPlatform()
        self.driver = ReconciliationDriver(self.platform)
        self.observability = ObservabilityAttachment(self.platform)
        self._last_statuses: dict = {}

    def _load_setpoint(self) -> DesiredTopology:
        """Loads and validates the current desired topology from disk."""
        return DesiredTopology.from_file(settings.CONFIG_FILE)

    def start(self):
        """Installs signal handlers and enters the main control loop."""
        signal.signal(signal.SIGINT, self.shutdown)
        signal.signal(signal.SIGTERM, self.shutdown)
        self.running = True

        self.console.print(
            Panel.fit(
                "[bold green]Topology Control Daemon[/bold green]\n"
                f"Status: [green]ONLINE[/green]\n"
                f"Config: [blue]{settings.CONFIG_FILE}[/blue]\n"
                f"Interval: [blue]{settings.POLLING_INTERVAL}s[/blue]",
                title="System Start",
            )
        )

        self.run_control_loop()

    def run_once(self) -> PassReport:
        """Observe, diff and apply once; publish scrape targets if configured."""
        setpoint = self._load_setpoint()
        report = self.driver.run_pass(setpoint.workloads, setpoint.namespaces)

        if settings.TARGETS_FILE:
            write_file_sd(self.observability.discover_all(setpoint.namespaces), settings.TARGETS_FILE)
        return report

    def run_control_loop(self):
        """The main loop re-reading the desired topology and converging toward it."""
        while self.running:
            try:
                report = self.run_once()
                if report.statuses != self._last_statuses:
                    self.console.print(render_report(report))
                    self._last_statuses = dict(report.statuses)
                else:
                    self.console.print("[dim green]✓ Topology stable[/dim green]", end="\r")

            except (TopologyFileError, ValidationError) as e:
                self.console.print(f"\n[bold red]Desired topology rejected:[/bold red] {e}")
            except Exception as e:
                self.console.print(f"\n[bold red]Uncaught Loop Exception:[/bold red] {e}")

            self._interruptible_sleep(settings.POLLING_INTERVAL)

        self.console.print("[bold red]System Offline.[/bold red]")

    def _interruptible_sleep(self, duration: int):
        """Splits sleep into small chunks to allow immediate shutdown."""
        steps = int(duration / settings.CONTROL_INTERVAL)
        for _ in range(steps):
            if not self.running:
                break
            time.sleep(settings.CONTROL_INTERVAL)

    def shutdown(self, signum, frame):
        """Stops the loop; running workloads are left in place."""
        if not self.running:
            return

        self.console.print(f"\n[bold orange1]🛑 Signal {signum} received. Shutting down gracefully...[/bold orange1]")
        self.running = False


if __name__ == "__main__":
    app = TopologyDaemon()
    app.start()
