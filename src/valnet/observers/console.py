# src/valnet/observers/console.py
import typer

from .events import BaseEvent

_CTX_KEYS = ("ts", "run_id", "role", "host")


def _color(name: str, data: dict):
    if name.endswith(("Failed", "TimedOut")):
        return typer.colors.RED
    if name.endswith("Summary"):
        failed = data.get("failed") or data.get("status") == "FAILED"
        return typer.colors.RED if failed else typer.colors.GREEN
    if name.endswith("Skipped"):
        return typer.colors.YELLOW
    return None


class ConsoleObserver:
    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        data = ", ".join(f"{x}={y}" for x, y in d.items() if x not in _CTX_KEYS and y is not None)
        typer.secho(f"[{d['ts']}] {k} role={d['role']} {data}", fg=_color(k, d))
