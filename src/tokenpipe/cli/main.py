# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
tokenpipe command line.

Usage:
  tokenpipe register <path> [--name NAME] [--alias ALIAS]
  tokenpipe run <model> [-p PROMPT] [--tools tools.json]
  tokenpipe serve [--port 11434]
  tokenpipe list
  tokenpipe rm <model>
  tokenpipe inspect <model>
  tokenpipe devices
"""

import json
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.style import Style

app = typer.Typer(
    name="tokenpipe",
    help="Stream tokens from local language models on CPU, GPU or unified memory.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """tokenpipe: backend-agnostic inference pipeline."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def _load_tools(path: Path):
    from tokenpipe.pipeline.types import ToolDefinition

    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Could not read tools file:[/] {e}")
        raise typer.Exit(1)
    if isinstance(data, dict):
        data = [data]
    try:
        return tuple(ToolDefinition.from_openai(t) for t in data)
    except (ValueError, AttributeError) as e:
        console.print(f"[red]Invalid tool definition:[/] {e}")
        raise typer.Exit(1)


def _ask_tool_result(event) -> tuple[object, str | None]:
    """Prompts for a tool result. JSON input is decoded; empty input declines the call."""
    console.print(
        f"\n[bold yellow]Tool call[/] {event.name}({json.dumps(event.arguments)}) [dim]{event.call_id}[/]"
    )
    raw = console.input("[bold yellow]result> [/]").strip()
    if not raw:
        return None, "The user declined to run the tool"
    try:
        return json.loads(raw), None
    except json.JSONDecodeError:
        return raw, None


def _print_stream(stream) -> bool:
    """Prints the stream's events. Returns False if it ended with a failure."""
    from tokenpipe.pipeline.types import Cancelled, Completed, Failed, Token, ToolCallRequested

    text_style = Style(color="green")
    ok = True
    for event in stream:
        if isinstance(event, Token):
            # markup=False keeps Rich from interpreting [] in model output
            console.print(event.text, end="", highlight=False, markup=False, style=text_style)
        elif isinstance(event, ToolCallRequested):
            result, error = _ask_tool_result(event)
            stream.submit_tool_result(event.call_id, result=result, error=error)
        elif isinstance(event, Completed):
            console.print()
            console.print(
                f"[dim]{event.reason} · {event.usage.prompt_tokens} prompt + "
                f"{event.usage.completion_tokens} completion tokens[/]"
            )
        elif isinstance(event, Cancelled):
            console.print(f"\n[yellow]Cancelled:[/] {event.reason}")
        elif isinstance(event, Failed):
            console.print(f"\n[red]Failed ({event.kind}):[/] {event.reason}")
            ok = False
    return ok


@app.command()
def run(
    model: str = typer.Argument(help="Registered model name, alias or local path"),
    prompt: str = typer.Option(None, "--prompt", "-p", help="Prompt (interactive if omitted)"),
    tools: Path = typer.Option(None, "--tools", help="JSON file with tool definitions"),
    max_tokens: int = typer.Option(512, "--max-tokens", "-n", min=0),
    temperature: float = typer.Option(0.7, "--temperature", "-t", min=0.0),
    top_p: float = typer.Option(1.0, "--top-p"),
    top_k: int = typer.Option(0, "--top-k", min=0),
    seed: int = typer.Option(None, "--seed"),
    stop: list[str] = typer.Option(None, "--stop", help="Stop sequence (repeatable)"),
    device: str = typer.Option("auto", "--device", "-d", help="auto, cpu or gpu"),
    quantize: str = typer.Option(None, "--quantize", "-q", help="4bit, 8bit or a GGUF type"),
):
    """Generates text from a prompt, streaming tokens as they arrive."""
    from tokenpipe.backends.base import BackendOptions, DevicePreference
    from tokenpipe.exceptions import LoadError, TokenpipeError
    from tokenpipe.pipeline.orchestrator import Pipeline
    from tokenpipe.pipeline.types import GenerationRequest, SamplingParams

    tool_defs = _load_tools(tools) if tools else ()
    try:
        sampling = SamplingParams(
            temperature=temperature,
            top_p=top_p,
            top_k=top_k,
            max_tokens=max_tokens,
            stop=tuple(stop or ()),
            seed=seed,
        )
        options = BackendOptions(
            device_preference=DevicePreference.parse(device), quantization=quantize
        )
    except (ValueError, TokenpipeError) as e:
        console.print(f"[red]Invalid option:[/] {e}")
        raise typer.Exit(1)

    pipeline = Pipeline()
    console.print(f"[cyan]Loading[/] {model}...")
    try:
        handle = pipeline.cache.get_or_load(
            model,
            quantization=quantize,
            device_preference=None if device == "auto" else device,
        )
    except LoadError as e:
        console.print(f"[red]{e.message}[/]\n{e.details or ''}")
        raise typer.Exit(1)
    console.print(f"[green]Loaded[/] {handle.model_id} on {handle.backend_kind.value} ({handle.backend.name})\n")

    def generate(text: str) -> bool:
        request = GenerationRequest(
            prompt=text, model_id=model, sampling=sampling, tools=tool_defs, options=options
        )
        with pipeline.submit(request) as stream:
            try:
                return _print_stream(stream)
            except KeyboardInterrupt:
                stream.cancel("Interrupted")
                return _print_stream(stream)

    if prompt is not None:
        if not generate(prompt):
            raise typer.Exit(1)
        return

    console.print("[dim]Each line is sent as a raw prompt. Type '/exit' to quit.[/]\n")
    while True:
        try:
            user_input = console.input("[bold blue]>>> [/]")
        except (KeyboardInterrupt, EOFError):
            break
        if user_input.strip().lower() in ("/exit", "/quit", "/bye"):
            break
        if not user_input.strip():
            continue
        generate(user_input)
    console.print("\n[dim]Session ended.[/]")


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address (default 127.0.0.1)"),
    port: int = typer.Option(None, "--port", "-p"),
    model: str = typer.Option(None, "--model", "-m", help="Preload a model and use it by default"),
):
    """Starts the HTTP API server."""
    from tokenpipe.api.server import start_server, state
    from tokenpipe.config import config
    from tokenpipe.exceptions import LoadError

    host = host or config.host
    port = port or config.port

    if host == "0.0.0.0":
        console.print(
            "[yellow]Warning:[/] Exposing the server to the network. "
            "Prompts and outputs will be reachable from any device on it."
        )
        if not typer.confirm("Continue?", default=True):
            raise typer.Exit(0)

    if model:
        console.print(f"[cyan]Preloading[/] {model}...")
        state.default_model = model
        try:
            state.get_pipeline().cache.get_or_load(model)
        except LoadError as e:
            console.print(f"[red]{e.message}[/]\n{e.details or ''}")
            raise typer.Exit(1)

    console.print(f"[bold green]tokenpipe server[/] at http://{host}:{port}")
    console.print("  POST /api/generate")
    start_server(host=host, port=port, default_model=model)


@app.command(name="list")
def list_models():
    """Lists registered models."""
    from rich.table import Table

    from tokenpipe.models.registry import ModelRegistry

    models = ModelRegistry().list_all()
    if not models:
        console.print("[dim]No models registered. Use 'tokenpipe register' to add one.[/]")
        return

    table = Table(title="Registered Models")
    table.add_column("Name", style="cyan")
    table.add_column("Alias", style="green")
    table.add_column("Format")
    table.add_column("Quantization")
    table.add_column("Size", justify="right")
    for m in models:
        table.add_row(m.name, m.alias or "-", m.format, m.quantization or "-", m.display_size)
    console.print(table)


@app.command()
def register(
    path: Path = typer.Argument(help="Model file or directory"),
    name: str = typer.Option(None, "--name", help="Registry name (default: file or directory name)"),
    alias: str = typer.Option(None, "--alias", "-a", help="Short alias"),
    ctx: int = typer.Option(None, "--ctx", "-c", help="Context length in tokens"),
):
    """Registers a local model so it can be used by name."""
    from tokenpipe.backends.quantization import detect_gguf_type
    from tokenpipe.config import config
    from tokenpipe.models.formats import ModelFormat, detect_format, weight_files
    from tokenpipe.models.manifest import ModelManifest
    from tokenpipe.models.registry import ModelRegistry

    path = path.expanduser().resolve()
    if not path.exists():
        console.print(f"[red]Path not found:[/] {path}")
        raise typer.Exit(1)
    fmt = detect_format(path)
    if fmt == ModelFormat.UNKNOWN:
        console.print(f"[red]No model weights found in[/] {path}")
        raise typer.Exit(1)

    registry = ModelRegistry()
    name = name or (path.stem if path.is_file() else path.name).lower()
    if alias and (existing := registry.get(alias)) and existing.name != name:
        console.print(f"[red]Alias '{alias}' is already used by:[/] {existing.name}")
        raise typer.Exit(1)

    files = weight_files(path)
    quantization = None
    if fmt == ModelFormat.GGUF:
        quantization = next((q for f in files if (q := detect_gguf_type(f.name))), None)
    manifest = ModelManifest(
        name=name,
        local_path=str(path),
        format=fmt.value,
        alias=alias,
        size_bytes=sum(f.stat().st_size for f in files),
        quantization=quantization,
        context_length=ctx or config.default_ctx_size,
    )
    registry.add(manifest)
    console.print(f"[bold green]Registered:[/] {manifest.name} ({manifest.display_size}, {fmt.value})")
    if alias:
        console.print(f"[dim]Use:[/] tokenpipe run {alias}")


@app.command()
def rm(
    model: str = typer.Argument(help="Model name or alias"),
    delete_files: bool = typer.Option(False, "--delete-files", help="Also delete the weights"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Removes a model from the registry."""
    import shutil

    from tokenpipe.models.registry import ModelRegistry

    registry = ModelRegistry()
    manifest = registry.get(model)
    if not manifest:
        console.print(f"[red]Model not found:[/] {model}")
        raise typer.Exit(1)

    action = "Delete" if delete_files else "Unregister"
    if not yes and not typer.confirm(f"{action} {manifest.name} ({manifest.display_size})?"):
        return

    if delete_files:
        path = Path(manifest.local_path)
        if path.is_dir():
            shutil.rmtree(path)
        elif path.is_file():
            path.unlink()

    registry.remove(manifest.name)
    console.print(f"[green]Removed:[/] {manifest.name}")


@app.command()
def inspect(model: str = typer.Argument(help="Model name or alias")):
    """Shows the details of a registered model."""
    from rich.panel import Panel
    from rich.text import Text

    from tokenpipe.models.registry import ModelRegistry

    manifest = ModelRegistry().get(model)
    if not manifest:
        console.print(f"[red]Model not found:[/] {model}")
        raise typer.Exit(1)

    info = Text()
    info.append(f"Name:          {manifest.name}\n")
    if manifest.alias:
        info.append(f"Alias:         {manifest.alias}\n")
    info.append(f"Path:          {manifest.local_path}\n")
    info.append(f"Format:        {manifest.format}\n")
    info.append(f"Quantization:  {manifest.quantization or 'N/A'}\n")
    info.append(f"Architecture:  {manifest.architecture or 'auto-detect'}\n")
    info.append(f"Context:       {manifest.context_length} tokens\n")
    info.append(f"Size:          {manifest.display_size}\n")
    info.append(f"Registered:    {manifest.created_at}\n")
    console.print(Panel(info, title=f"[bold]{manifest.name}[/]", border_style="cyan"))


@app.command()
def devices():
    """Lists the compute devices of this host."""
    from rich.table import Table

    from tokenpipe.backends.selector import available_devices, resolve_backend_kind
    from tokenpipe.config import config
    from tokenpipe.models.manifest import format_bytes

    table = Table(title="Compute Devices")
    table.add_column("Kind", style="cyan")
    table.add_column("Device")
    table.add_column("Memory", justify="right")
    table.add_column("Shared pool")
    for d in available_devices():
        memory = format_bytes(d.memory_budget) if d.memory_budget else "?"
        table.add_row(d.kind.value, d.device, memory, "yes" if d.shared_pool else "no")
    console.print(table)
    console.print(f"[dim]'{config.device}' resolves to:[/] {resolve_backend_kind(config.device).value}")


@app.command()
def version():
    """Shows the tokenpipe version."""
    from tokenpipe import __version__

    console.print(f"tokenpipe v{__version__}, licensed under HRUL v1.0")


if __name__ == "__main__":
    app()
