import typer

from ..component import Options, default_registry, execute_step
from ..models import Step
from ..utils import load_yaml
from . import handle_errors

app = typer.Typer(help="Run steps on this node")


@app.command("run")
@handle_errors
def run_step(
    step_file: str = typer.Argument(..., help="Step document (JSON or YAML)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log actions without changing the node"),
):
    """Execute a step payload on this node."""
    step = Step.from_dict(load_yaml(step_file))
    print(f"🚀 Running step {step.name} ({step.action.value})")
    outputs = execute_step(default_registry(), step, Options(dry_run=dry_run))
    for output in filter(None, outputs):
        print(output.decode('utf-8', errors='replace'))
    print(f"✅ Step {step.name} done")
