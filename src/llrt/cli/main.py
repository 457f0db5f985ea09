# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
CLI principal de llrt.

Uso:
  llrt run <modelo> <prompt> [--max-tokens 512]
  llrt chat <modelo>
  llrt list
  llrt params <modelo>
  llrt config [clave] [valor]
  llrt serve [--port 11435]
"""

import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.style import Style
from rich.table import Table

from llrt.config import config

app = typer.Typer(
    name="llrt",
    help="Ejecuta modelos GGUF localmente con generación en streaming.",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Mostrar logs del runtime"),
):
    """Runtime local para modelos LLM cuantizados."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _build_runtime():
    """Crea el runtime del proceso (punto de composición)."""
    from llrt.runtime import Runtime

    config.ensure_dirs()
    return Runtime(config)


class _ConsoleCallback:
    """Imprime los tokens a medida que llegan y espera el evento final."""

    def __init__(self):
        self.done = threading.Event()
        self.error: str | None = None
        self.full_text = ""
        self._style = Style(color="green")

    def on_token(self, text: str) -> None:
        # markup=False evita que Rich interprete [] como tags de formato
        console.print(text, end="", highlight=False, markup=False, style=self._style)

    def on_complete(self, full_text: str) -> None:
        self.full_text = full_text
        self.done.set()

    def on_error(self, message: str) -> None:
        self.error = message
        self.done.set()


def _stream(runtime, model: str, prompt: str, params) -> _ConsoleCallback:
    callback = _ConsoleCallback()
    runtime.caller.call_model(model, prompt, callback, params)
    try:
        while not callback.done.wait(0.1):
            pass
    except KeyboardInterrupt:
        console.print("\n[yellow]Deteniendo generación...[/]")
        runtime.caller.stop_generation()
        if not callback.done.wait(runtime.settings.stop_wait_timeout):
            from llrt.exceptions import StopTimeoutError

            callback.error = str(StopTimeoutError(runtime.settings.stop_wait_timeout))
    console.print()
    return callback


@app.command()
def run(
    model: str = typer.Argument(help="Nombre del modelo local"),
    prompt: str = typer.Argument(help="Texto de entrada"),
    max_tokens: int = typer.Option(None, "--max-tokens", "-n", help="Máximo de tokens a generar"),
    no_think: bool = typer.Option(False, "--no-think", help="Desactivar el modo de razonamiento"),
    seed: int = typer.Option(-1, "--seed", help="Semilla de muestreo (-1 = aleatoria)"),
):
    """Genera una respuesta para un único prompt."""
    from dataclasses import replace

    from llrt.lifecycle.caller import default_params

    runtime = _build_runtime()
    if not runtime.registry.exists(model):
        console.print(f"[red]Modelo no encontrado:[/] {model}")
        console.print("Usa 'llrt list' para ver modelos disponibles.")
        raise typer.Exit(1)

    params = default_params(runtime.settings)
    params = replace(
        params,
        max_tokens=max_tokens if max_tokens is not None else params.max_tokens,
        thinking_mode=params.thinking_mode and not no_think,
        seed=seed,
    )

    console.print(f"[cyan]Cargando[/] {model}...")
    try:
        result = _stream(runtime, model, prompt, params)
    finally:
        runtime.shutdown()

    if result.error:
        console.print(f"[red]Error:[/] {result.error}")
        raise typer.Exit(1)


@app.command()
def chat(
    model: str = typer.Argument(help="Nombre del modelo local"),
    no_think: bool = typer.Option(False, "--no-think", help="Desactivar el modo de razonamiento"),
):
    """Inicia una sesión interactiva con un modelo."""
    from dataclasses import replace

    from llrt.exceptions import LLRTError
    from llrt.lifecycle.caller import default_params

    runtime = _build_runtime()
    if not runtime.registry.exists(model):
        console.print(f"[red]Modelo no encontrado:[/] {model}")
        raise typer.Exit(1)

    console.print(f"[cyan]Cargando[/] {model}...")
    try:
        runtime.manager.load_model(model).result(timeout=runtime.settings.load_wait_timeout)
    except (LLRTError, FutureTimeoutError) as e:
        console.print(f"[red]Error cargando el modelo:[/] {e}")
        runtime.shutdown()
        raise typer.Exit(1)
    console.print("[green]Modelo cargado.[/] '/reset' borra la memoria, '/exit' para salir.\n")

    params = default_params(runtime.settings)
    if no_think:
        params = replace(params, thinking_mode=False)

    try:
        while True:
            try:
                user_input = console.input("[bold blue]>>> [/]")
            except (KeyboardInterrupt, EOFError):
                break

            command = user_input.strip().lower()
            if command in ("/exit", "/quit", "/bye"):
                break
            if command == "/reset":
                try:
                    runtime.manager.reset_model_memory()
                    console.print("[dim]Memoria del modelo reiniciada.[/]")
                except LLRTError as e:
                    console.print(f"[red]{e}[/]")
                continue
            if not command:
                continue

            result = _stream(runtime, model, user_input, params)
            if result.error:
                console.print(f"[red]Error:[/] {result.error}")
    finally:
        runtime.shutdown()
    console.print("\n[dim]Sesión terminada.[/]")


@app.command(name="list")
def list_models():
    """Lista los modelos disponibles en el directorio de modelos."""
    from llrt.models.registry import ModelRegistry

    registry = ModelRegistry(config.models_dir)
    models = registry.list_all()

    if not models:
        console.print(f"[dim]No hay modelos en {config.models_dir}.[/]")
        return

    table = Table(title="Modelos Locales")
    table.add_column("Nombre", style="cyan")
    table.add_column("Formato")
    table.add_column("Tamaño", justify="right")
    table.add_column("Modificado")

    for m in models:
        size_gb = m.size_bytes / (1024**3)
        table.add_row(m.name, m.format.value, f"{size_gb:.2f} GB", m.modified_at)

    console.print(table)


@app.command()
def params(model: str = typer.Argument(help="Nombre del modelo local")):
    """Muestra los parámetros de muestreo que se usarían para un modelo."""
    from llrt.config import load_settings
    from llrt.engine.params import ParameterResolver
    from llrt.models.registry import ModelRegistry

    registry = ModelRegistry(config.models_dir)
    if not registry.exists(model):
        console.print(f"[red]Modelo no encontrado:[/] {model}")
        raise typer.Exit(1)

    settings = load_settings(config.settings_path)
    sampling, source = ParameterResolver(registry.path_for(model), settings).resolve()

    table = Table(title=f"Parámetros de {model} (origen: {source})")
    table.add_column("Parámetro", style="cyan")
    table.add_column("Valor", justify="right")
    table.add_row("temperature", str(sampling.temperature))
    table.add_row("top_p", str(sampling.top_p))
    table.add_row("top_k", str(sampling.top_k))
    table.add_row("repeat_penalty", str(sampling.repeat_penalty))
    console.print(table)


@app.command(name="config")
def config_cmd(
    key: str = typer.Argument(None, help="Ajuste a modificar"),
    value: str = typer.Argument(None, help="Nuevo valor"),
):
    """Muestra o modifica los ajustes de inferencia."""
    from llrt.config import load_settings, save_settings
    from llrt.exceptions import ConfigurationError

    try:
        settings = load_settings(config.settings_path)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    if key is None:
        table = Table(title="Ajustes")
        table.add_column("Clave", style="cyan")
        table.add_column("Valor", justify="right")
        for name, current in settings.to_dict().items():
            table.add_row(name, str(current))
        console.print(table)
        return

    if value is None:
        data = settings.to_dict()
        if key not in data:
            console.print(f"[red]Clave desconocida:[/] {key}")
            raise typer.Exit(1)
        console.print(f"{key} = {data[key]}")
        return

    try:
        updated = settings.with_value(key, value)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    save_settings(config.settings_path, updated)
    console.print(f"[green]{key}[/] = {getattr(updated, key)}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(11435, "--port", "-p"),
    model: str = typer.Option(None, "--model", "-m", help="Pre-cargar modelo"),
):
    """Inicia el servidor API."""
    from llrt.api.server import start_server
    from llrt.exceptions import LLRTError

    if host == "0.0.0.0":
        console.print(
            "[yellow]Advertencia:[/] Exponiendo el servidor a la red. "
            "Los prompts enviados a la API serán accesibles desde "
            "cualquier dispositivo en la red."
        )
        if not typer.confirm("¿Continuar?", default=True):
            raise typer.Exit(0)

    runtime = _build_runtime()
    if model:
        console.print(f"[cyan]Pre-cargando[/] {model}...")
        try:
            runtime.manager.load_model(model).result(timeout=runtime.settings.load_wait_timeout)
        except (LLRTError, FutureTimeoutError) as e:
            console.print(f"[red]Error cargando el modelo:[/] {e}")
            runtime.shutdown()
            raise typer.Exit(1)
        runtime.manager.engine.keep_loaded = True

    console.print(f"[bold green]llrt[/] escuchando en http://{host}:{port}")
    start_server(host=host, port=port, runtime=runtime)


@app.command()
def version():
    """Muestra la versión de llrt."""
    from llrt import __version__

    console.print(f"llrt v{__version__} - Licensed under HRUL v1.0")


if __name__ == "__main__":
    app()
