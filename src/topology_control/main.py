import argparse
import json
import sys
from pathlib import Path

from rich.console import Console
from rich.prompt import Confirm

from .daemon import TopologyDaemon, render_report
from .driver import ReconciliationDriver
from .errors import ReconciliationError, TopologyFileError, ValidationError
from .models import DesiredTopology
from .observability import ObservabilityAttachment, to_file_sd, write_file_sd
from .platform import DockerPlatform, Platform
from .settings import get_settings

console = Console()


def _parser() -> argparse.ArgumentParser:
    settings = get_settings()
    p = argparse.ArgumentParser(prog="topology-control", description="Desired-state topology manager")
    sub = p.add_subparsers(dest="cmd", required=True)

    def with_file(parser):
        parser.add_argument("-f", "--file", type=Path, default=settings.CONFIG_FILE, help="Desired topology YAML")
        return parser

    with_file(sub.add_parser("plan", help="Show the operations a pass would apply"))
    with_file(sub.add_parser("apply", help="Run a single reconciliation pass"))
    sub.add_parser("run", help="Reconcile continuously until interrupted")

    s_targets = with_file(sub.add_parser("targets", help="List scrape targets of applied workloads"))
    s_targets.add_argument("-n", "--namespace", action="append", help="Limit to namespace (repeatable)")
    s_targets.add_argument("-o", "--output", type=Path, help="Write Prometheus file_sd JSON here")

    s_down = sub.add_parser("teardown", help="Delete a namespace")
    s_down.add_argument("namespace")
    s_down.add_argument("--cascade", action="store_true", help="Also delete every workload in it")
    s_down.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    return p


def main(argv: list[str] | None = None, platform: Platform | None = None) -> int:
    args = _parser().parse_args(argv)
    platform = platform or DockerPlatform()

    if args.cmd == "run":
        TopologyDaemon(platform).start()
        return 0

    try:
        if args.cmd == "teardown":
            return _teardown(platform, args.namespace, args.cascade, args.yes)

        topology = DesiredTopology.from_file(args.file)
        driver = ReconciliationDriver(platform)

        if args.cmd == "plan":
            operations = driver.plan(topology.workloads, topology.namespaces)
            if not operations:
                console.print("[green]✓ No changes. Topology matches desired state.[/green]")
            for op in operations:
                console.print(f"  {op.describe()}")
            return 0

        if args.cmd == "apply":
            report = driver.run_pass(topology.workloads, topology.namespaces)
            console.print(render_report(report))
            return 0 if report.ok else 1

        if args.cmd == "targets":
            namespaces = args.namespace or topology.namespaces
            targets = ObservabilityAttachment(platform).discover_all(namespaces)
            if args.output:
                write_file_sd(targets, args.output)
                console.print(f"Wrote {len(targets)} target(s) to [blue]{args.output}[/blue]")
            else:
                console.print_json(json.dumps(to_file_sd(targets)))
            return 0

    except (TopologyFileError, ValidationError) as e:
        console.print(f"[bold red]Desired topology rejected:[/bold red] {e}")
        return 2
    except ReconciliationError as e:
        console.print(f"[bold red]❌ Platform failure:[/bold red] {e}")
        return 1

    return 2


def _teardown(platform: Platform, namespace: str, cascade: bool, assume_yes: bool) -> int:
    if cascade and not assume_yes:
        if not Confirm.ask(f"Delete namespace [bold]{namespace}[/bold] and every workload in it?", default=False):
            console.print("Aborted.")
            return 1
    ReconciliationDriver(platform).delete_namespace(namespace, cascade=cascade)
    console.print(f"[bold green]✅ Namespace {namespace} deleted[/bold green]")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
