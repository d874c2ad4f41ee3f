import statistics
import threading
import time
from collections import deque

from rich import box
from rich.panel import Panel
from rich.table import Table

from .header import RequestContext, UpstreamResponse


def format_bytes(num):
    for unit in ['bytes', 'KB', 'MB', 'GB', 'TB']:
        if num < 1024.0:
            return f"{num:.2f} {unit}"
        num /= 1024.0
    return f"{num:.2f} PB"


class DiagnosticHooks:
    """Per-request callbacks from the accept loop. All optional."""

    def on_accepted(self, context: RequestContext):
        pass

    def on_relayed(self, context: RequestContext, response: UpstreamResponse, written: int):
        pass

    def on_error(self, context: RequestContext, error: BaseException):
        pass


class ProxyStats(DiagnosticHooks):
    """Counters and recent upstream latencies for the shutdown summary."""

    def __init__(self, keep_last=1000):
        self.lock = threading.Lock()
        self.start_time = time.time()
        self.total_requests = 0
        self.relayed = 0
        self.failed = 0
        self.bytes_relayed = 0
        self.status_counts = {}
        self.errors = {}
        self.response_times = deque(maxlen=keep_last)

    def on_accepted(self, context):
        with self.lock:
            self.total_requests += 1

    def on_relayed(self, context, response, written):
        with self.lock:
            self.relayed += 1
            self.bytes_relayed += written
            self.status_counts[response.status] = self.status_counts.get(response.status, 0) + 1
            self.response_times.append(response.elapsed * 1000)

    def on_error(self, context, error):
        with self.lock:
            self.failed += 1
            name = type(error).__name__
            self.errors[name] = self.errors.get(name, 0) + 1

    def build_summary(self):
        elapsed = int(time.time() - self.start_time)

        if self.response_times:
            avg_resp = f"{statistics.mean(self.response_times):.2f} ms"
            min_resp = f"{min(self.response_times):.2f} ms"
            max_resp = f"{max(self.response_times):.2f} ms"
        else:
            avg_resp = min_resp = max_resp = "N/A"

        status_panel = Panel(
            f"[bold]Uptime:[/bold] {elapsed} sec\n"
            f"[bold]Requests:[/bold] {self.total_requests}\n"
            f"[bold]Relayed:[/bold] {self.relayed}\n"
            f"[bold]Failed:[/bold] {self.failed}\n"
            f"[bold]Relayed bytes:[/bold] {format_bytes(self.bytes_relayed)}",
            title="[bold cyan]Session[/bold cyan]",
            border_style="green",
            padding=(1, 2),
        )

        response_panel = Panel(
            f"[bold]Avg Response:[/bold] {avg_resp}\n"
            f"[bold]Min Response:[/bold] {min_resp}\n"
            f"[bold]Max Response:[/bold] {max_resp}",
            title="[bold magenta]Upstream Times[/bold magenta]",
            border_style="magenta",
            padding=(1, 2),
        )

        outcome_table = Table(title="[bold red]Outcomes[/bold red]", expand=True, box=box.SIMPLE)
        outcome_table.add_column("Outcome", style="bold cyan", justify="center")
        outcome_table.add_column("Count", justify="right")
        for status, count in sorted(self.status_counts.items()):
            outcome_table.add_row(f"HTTP {status}", str(count))
        for name, count in sorted(self.errors.items()):
            outcome_table.add_row(f"[red]{name}[/red]", str(count))

        grid = Table.grid(expand=True)
        grid.add_row(status_panel, response_panel)
        grid.add_row(outcome_table)
        return grid
