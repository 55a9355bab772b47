from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
import json
import logging
import os
from pathlib import Path
import sys
import time
import uuid

import typer

from clock import SystemTimeSource
from errors import MissingUsageError, RequestError, StreamDecodeError
from records import BenchmarkResult
from runner import DEFAULT_TIMEOUT_S, StreamingBenchmarkRunner
from storage import ResultStorage
from tokens import count_prompt_tokens, make_output_token_counter


logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure root logger from STREAM_BENCH_LOG_LEVEL env var (default: WARNING)."""
    level_name = os.environ.get("STREAM_BENCH_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


app = typer.Typer(no_args_is_help=True, help="Streaming chat-completion latency benchmark")
history_app = typer.Typer(no_args_is_help=True, help="Stored result commands")
app.add_typer(history_app, name="history")


DEFAULT_BENCH_DB = Path("bench.duckdb")
DEFAULT_PROMPT = "Thank you."
DEFAULT_API_KEY_ENV = "OPENAI_API_KEY"
URL_ENV = "STREAM_BENCH_URL"
MODEL_ENV = "STREAM_BENCH_MODEL"
QUANTILE_KEYS = ("p50", "p90", "p95", "p99")


def _format_seconds(value: object) -> str:
    if value is None:
        return "-"
    return f"{float(value):.4f}s"


def _format_timestamp(value: object) -> str:
    if value is None:
        return "-"
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return "-"
    return datetime.fromtimestamp(numeric).astimezone().isoformat(timespec="seconds")


def _format_unix_ns(value: int) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1e9).astimezone().isoformat(timespec="milliseconds")


def _parse_headers(values: list[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values:
        name, separator, header_value = value.partition(":")
        if not separator or not name.strip():
            raise ValueError(f"Invalid header {value!r}, expected NAME:VALUE")
        headers[name.strip()] = header_value.strip()
    return headers


def _result_payload(
    result: BenchmarkResult,
    endpoint: str,
    model: str,
    result_id: str | None,
) -> dict[str, object]:
    payload: dict[str, object] = {
        "endpoint": endpoint,
        "model": model,
        **asdict(result),
    }
    payload["total_tokens"] = (
        result.input_tokens + result.output_tokens + (result.reasoning_tokens or 0)
    )
    if result_id is not None:
        payload["result_id"] = result_id
    return payload


def _render_result(
    result: BenchmarkResult,
    endpoint: str,
    model: str,
    result_id: str | None,
) -> str:
    lines = [
        "Benchmark result",
        f"Endpoint         : {endpoint}",
        f"Model            : {model}",
        f"Input tokens     : {result.input_tokens}",
        f"Output tokens    : {result.output_tokens} ({result.token_count_source})",
        f"TTFT             : {_format_seconds(result.ttft_s)}",
        f"Throughput       : {result.throughput_tps:.2f} tok/s",
        f"Total time       : {_format_seconds(result.total_elapsed_s)}",
        f"Inter-token lat. : {_format_seconds(result.inter_token_latency_s)}",
    ]
    if result.reasoning_chunks or result.reasoning_tokens:
        lines.append(f"TTFO             : {_format_seconds(result.ttfo_s)}")
        lines.append(f"Inter-event lat. : {_format_seconds(result.inter_event_latency_s)}")
        lines.append(f"Reasoning chunks : {result.reasoning_chunks}")
        if result.reasoning_tokens is not None:
            lines.append(f"Reasoning tokens : {result.reasoning_tokens}")
    if result.finish_reason:
        lines.append(f"Finish reason    : {result.finish_reason}")
    if result.server_usage is not None:
        usage = result.server_usage
        lines.append(
            (
                f"Server usage     : prompt={usage.prompt_tokens} "
                f"completion={usage.completion_tokens} total={usage.total_tokens}"
            )
        )
    lines.append(f"Request start    : {_format_unix_ns(result.request_start_unix_ns)}")
    lines.append(f"Request end      : {_format_unix_ns(result.request_end_unix_ns)}")
    if result_id is not None:
        lines.append(f"Result ID        : {result_id}")
    return "\n".join(lines)


def _format_quantile(value: object) -> str:
    if value is None:
        return "-"
    return f"{float(value):.4f}"


def _render_quantile_line(label: str, quantiles: dict[str, object], unit: str) -> str:
    label_with_unit = f"{label} ({unit})"
    count = int(quantiles.get("count") or 0)
    values = " ".join(
        f"{key}={_format_quantile(quantiles.get(key))}" for key in QUANTILE_KEYS
    )
    return f"- {label_with_unit:<18} count={count:<5} {values}"


def _render_history(
    results: list[dict[str, object]],
    summary: dict[str, dict[str, object]],
    db: Path,
) -> str:
    lines = [
        "Benchmark history",
        f"Total : {len(results)}",
        f"DB    : {db}",
        "",
        "Summary:",
        _render_quantile_line("ttft", summary.get("ttft", {}), unit="s"),
        _render_quantile_line("throughput", summary.get("throughput", {}), unit="tok/s"),
        _render_quantile_line("e2e", summary.get("e2e", {}), unit="s"),
        "",
        "Results:",
    ]
    for row in results:
        lines.append(
            (
                f"- {row['result_id']} recorded={_format_timestamp(row['recorded_at'])} "
                f"model={row['model']} in={row['input_tokens']} out={row['output_tokens']} "
                f"ttft={_format_seconds(row['ttft_s'])} "
                f"tps={float(row['throughput_tps']):.2f} "
                f"e2e={_format_seconds(row['total_elapsed_s'])}"
            )
        )
    return "\n".join(lines)


@app.command("run")
def run_benchmark(
    url: str | None = typer.Option(
        None, "--url", envvar=URL_ENV, help="Base URL (e.g., http://localhost:8000/v1)"
    ),
    api_key: str = typer.Option(
        "", "--api-key", envvar=DEFAULT_API_KEY_ENV, help="API key sent as a bearer token"
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", envvar=MODEL_ENV, help="Model identifier"
    ),
    prompt: str = typer.Option(DEFAULT_PROMPT, "--prompt", "-p", help="Prompt text"),
    input_tokens: int | None = typer.Option(
        None, "--input-tokens", min=0, help="Prompt token count; skips tokenization"
    ),
    tokenizer: Path | None = typer.Option(
        None, "--tokenizer", help="Hugging Face tokenizer.json used for token counting"
    ),
    tokenize_output: bool = typer.Option(
        False,
        "--tokenize-output",
        help="Count output tokens by tokenizing the generated text instead of counting events",
    ),
    server_token_count: bool = typer.Option(
        False,
        "--server-token-count",
        help="Take output and reasoning token counts from server-reported usage",
    ),
    max_tokens: int | None = typer.Option(
        None, "--max-tokens", min=1, help="Maximum output tokens"
    ),
    temperature: float | None = typer.Option(
        None, "--temperature", help="Sampling temperature"
    ),
    timeout: float = typer.Option(
        DEFAULT_TIMEOUT_S, "--timeout", help="Request timeout in seconds"
    ),
    header: list[str] = typer.Option(
        [], "--header", "-H", help="Extra request header as NAME:VALUE (repeatable)"
    ),
    include_usage: bool = typer.Option(
        False, "--include-usage", help="Request server-reported token usage"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path | None = typer.Option(
        None, "--db", "-d", help="Store the result in this DuckDB file"
    ),
) -> None:
    if not url:
        typer.echo(f"Missing endpoint URL. Use --url or ${URL_ENV}.")
        raise typer.Exit(1)
    if not model:
        typer.echo(f"Missing model. Use --model or ${MODEL_ENV}.")
        raise typer.Exit(1)
    if timeout <= 0:
        typer.echo("Timeout must be greater than 0.")
        raise typer.Exit(1)
    if tokenize_output and server_token_count:
        typer.echo("Use either --tokenize-output or --server-token-count, not both.")
        raise typer.Exit(1)

    try:
        extra_headers = _parse_headers(header)
    except ValueError as exc:
        typer.echo(str(exc))
        raise typer.Exit(1)

    output_token_counter = None
    try:
        if input_tokens is None:
            input_tokens = count_prompt_tokens(prompt, model, tokenizer_path=tokenizer)
        if tokenize_output:
            output_token_counter = make_output_token_counter(model, tokenizer_path=tokenizer)
    except FileNotFoundError as exc:
        typer.echo(str(exc))
        raise typer.Exit(1)

    runner = StreamingBenchmarkRunner(
        timeout_s=timeout,
        max_tokens=max_tokens,
        temperature=temperature,
        include_usage=include_usage,
        extra_headers=extra_headers,
        output_token_counter=output_token_counter,
        use_server_token_count=server_token_count,
    )
    logger.debug(
        "Running benchmark: url=%s model=%r input_tokens=%d",
        url,
        model,
        input_tokens,
    )
    try:
        result = runner.run(
            endpoint=url,
            api_key=api_key,
            model=model,
            prompt=prompt,
            input_tokens=input_tokens,
            time_source=SystemTimeSource(),
        )
    except RequestError as exc:
        message = f"Request failed: {exc}"
        if exc.body:
            message += f"\n{exc.body}"
        typer.echo(message)
        raise typer.Exit(1)
    except StreamDecodeError as exc:
        typer.echo(f"Stream decode failed: {exc}")
        raise typer.Exit(1)
    except MissingUsageError as exc:
        typer.echo(f"{exc}. Drop --server-token-count or use an endpoint that reports usage.")
        raise typer.Exit(1)

    result_id: str | None = None
    if db is not None:
        result_id = f"{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"
        storage = ResultStorage(db)
        try:
            storage.insert_result(
                result_id=result_id,
                recorded_at=time.time(),
                endpoint=url,
                model=model,
                prompt=prompt,
                result=result,
            )
        finally:
            storage.close()

    if json_output:
        typer.echo(
            json.dumps(
                _result_payload(result, url, model, result_id),
                ensure_ascii=False,
            )
        )
        return
    typer.echo(_render_result(result, url, model, result_id))


@history_app.command("list")
def history_list(
    model: str | None = typer.Option(None, "--model", help="Only show this model"),
    limit: int | None = typer.Option(
        None, "--limit", "-n", min=1, help="Maximum number of results to show"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB result file"),
) -> None:
    if not db.exists():
        typer.echo("No results found.")
        raise typer.Exit(1)

    storage = ResultStorage(db)
    try:
        results = storage.list_results(model=model, limit=limit)
        if not results:
            typer.echo("No results found.")
            raise typer.Exit(1)
        summary = storage.summarize(model=model)

        if json_output:
            typer.echo(
                json.dumps(
                    {
                        "db": str(db),
                        "total": len(results),
                        "summary": summary,
                        "results": results,
                    },
                    ensure_ascii=False,
                )
            )
            return
        typer.echo(_render_history(results, summary, db=db))
    finally:
        storage.close()


@history_app.command("remove")
def history_remove(
    result_id: str = typer.Option(..., "--result-id", help="Result identifier to remove"),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB result file"),
) -> None:
    if not db.exists():
        typer.echo(f"Result not found: {result_id}")
        raise typer.Exit(1)

    storage = ResultStorage(db)
    try:
        if not storage.delete_result(result_id):
            typer.echo(f"Result not found: {result_id}")
            raise typer.Exit(1)
        typer.echo(f"Result removed: {result_id}")
    finally:
        storage.close()


def main() -> None:
    _setup_logging()
    app()


if __name__ == "__main__":
    main()
