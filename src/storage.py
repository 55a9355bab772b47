from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import duckdb

from metrics import quantile_summary
from records import BenchmarkResult

logger = logging.getLogger(__name__)

_RESULT_COLUMNS = (
    "result_id",
    "recorded_at",
    "endpoint",
    "model",
    "prompt",
    "input_tokens",
    "output_tokens",
    "reasoning_chunks",
    "reasoning_tokens",
    "token_count_source",
    "ttft_s",
    "ttfo_s",
    "throughput_tps",
    "total_elapsed_s",
    "inter_token_latency_s",
    "inter_event_latency_s",
    "finish_reason",
    "request_start_unix_ns",
    "request_end_unix_ns",
)
_COLUMN_LIST = ", ".join(_RESULT_COLUMNS)
_PLACEHOLDERS = ", ".join("?" for _ in _RESULT_COLUMNS)


class ResultStorage:
    """DuckDB-backed history of completed benchmark runs."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        logger.debug("Opening database: %s", db_path)
        self.connection = duckdb.connect(str(db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        logger.debug("Initializing schema")
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS results (
                result_id VARCHAR PRIMARY KEY,
                recorded_at DOUBLE NOT NULL,
                endpoint VARCHAR NOT NULL,
                model VARCHAR NOT NULL,
                prompt VARCHAR NOT NULL,
                input_tokens BIGINT NOT NULL,
                output_tokens BIGINT NOT NULL,
                reasoning_chunks BIGINT NOT NULL,
                reasoning_tokens BIGINT,
                token_count_source VARCHAR NOT NULL,
                ttft_s DOUBLE,
                ttfo_s DOUBLE,
                throughput_tps DOUBLE NOT NULL,
                total_elapsed_s DOUBLE NOT NULL,
                inter_token_latency_s DOUBLE,
                inter_event_latency_s DOUBLE,
                finish_reason VARCHAR,
                request_start_unix_ns BIGINT NOT NULL,
                request_end_unix_ns BIGINT NOT NULL
            );
            """
        )

    def close(self) -> None:
        self.connection.close()

    def insert_result(
        self,
        result_id: str,
        recorded_at: float,
        endpoint: str,
        model: str,
        prompt: str,
        result: BenchmarkResult,
    ) -> None:
        logger.debug("Inserting result: %s", result_id)
        self.connection.execute(
            f"""
            INSERT INTO results ({_COLUMN_LIST})
            VALUES ({_PLACEHOLDERS})
            """,
            [
                result_id,
                recorded_at,
                endpoint,
                model,
                prompt,
                result.input_tokens,
                result.output_tokens,
                result.reasoning_chunks,
                result.reasoning_tokens,
                result.token_count_source,
                result.ttft_s,
                result.ttfo_s,
                result.throughput_tps,
                result.total_elapsed_s,
                result.inter_token_latency_s,
                result.inter_event_latency_s,
                result.finish_reason,
                result.request_start_unix_ns,
                result.request_end_unix_ns,
            ],
        )

    def list_results(
        self, model: str | None = None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        query = f"SELECT {_COLUMN_LIST} FROM results"
        params: list[object] = []
        if model is not None:
            query += " WHERE model = ?"
            params.append(model)
        query += " ORDER BY recorded_at DESC"
        if limit is not None:
            query += f" LIMIT {int(limit)}"

        rows = self.connection.execute(query, params).fetchall()
        return [dict(zip(_RESULT_COLUMNS, row)) for row in rows]

    def delete_result(self, result_id: str) -> bool:
        existing = self.connection.execute(
            "SELECT 1 FROM results WHERE result_id = ? LIMIT 1",
            [result_id],
        ).fetchone()
        if existing is None:
            return False

        logger.debug("Deleting result: %s", result_id)
        self.connection.execute("DELETE FROM results WHERE result_id = ?", [result_id])
        return True

    def summarize(self, model: str | None = None) -> dict[str, dict[str, float | int | None]]:
        results = self.list_results(model=model)
        return {
            "ttft": quantile_summary(
                [float(row["ttft_s"]) for row in results if row["ttft_s"] is not None]
            ),
            "throughput": quantile_summary(
                [float(row["throughput_tps"]) for row in results]
            ),
            "e2e": quantile_summary([float(row["total_elapsed_s"]) for row in results]),
        }
