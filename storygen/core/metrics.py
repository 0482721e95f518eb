from __future__ import annotations

from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

registry = CollectorRegistry(auto_describe=True)

STAGE_DURATION = Histogram(
    "storygen_stage_duration_seconds",
    "Duration (seconds) of a generation stage, including retries.",
    ["graph", "stage"],
    registry=registry,
)

STAGE_ATTEMPTS_TOTAL = Counter(
    "storygen_stage_attempts_total",
    "Generation stage attempts partitioned by outcome.",
    ["stage", "outcome"],
    registry=registry,
)

JSON_PARSE_FAILURES = Counter(
    "storygen_json_parse_failures_total",
    "Number of times parsing JSON from Gemini failed, labeled by the extraction tier.",
    ["tier"],
    registry=registry,
)

GEMINI_CALL_DURATION = Histogram(
    "storygen_gemini_call_duration_seconds",
    "Latency for Gemini API calls per operation.",
    ["operation"],
    registry=registry,
)

GEMINI_CALLS_TOTAL = Counter(
    "storygen_gemini_calls_total",
    "Total Gemini API calls partitioned by operation and status.",
    ["operation", "status"],
    registry=registry,
)

GEMINI_TOKENS_TOTAL = Counter(
    "storygen_gemini_tokens_total",
    "Gemini tokens consumed, partitioned by model and direction (prompt or output).",
    ["model", "direction"],
    registry=registry,
)

CONTINUITY_RESULTS = Counter(
    "storygen_continuity_results_total",
    "Continuity check outcomes.",
    ["status"],
    registry=registry,
)

CHANGE_ANALYSIS_RESULTS = Counter(
    "storygen_change_analysis_results_total",
    "Clarification resolver outcomes.",
    ["status"],
    registry=registry,
)

REGENERATION_RUNS = Counter(
    "storygen_regeneration_runs_total",
    "Scene regeneration runs by outcome.",
    ["outcome"],
    registry=registry,
)


@contextmanager
def track_stage(graph: str, stage: str):
    with STAGE_DURATION.labels(graph=graph, stage=stage).time():
        yield


def record_stage_attempt(stage: str, outcome: str) -> None:
    STAGE_ATTEMPTS_TOTAL.labels(stage=stage, outcome=outcome).inc()


def increment_json_parse_failure(tier: str) -> None:
    JSON_PARSE_FAILURES.labels(tier=tier).inc()


@contextmanager
def track_gemini_call(operation: str):
    timer = GEMINI_CALL_DURATION.labels(operation=operation).time()
    timer.__enter__()
    try:
        yield
        GEMINI_CALLS_TOTAL.labels(operation=operation, status="success").inc()
    except Exception:
        GEMINI_CALLS_TOTAL.labels(operation=operation, status="error").inc()
        raise
    finally:
        timer.__exit__(None, None, None)


def record_token_usage(model: str, usage: dict | None) -> None:
    usage = usage or {}
    prompt = usage.get("prompt_token_count") or 0
    output = usage.get("candidates_token_count") or 0
    if prompt:
        GEMINI_TOKENS_TOTAL.labels(model=model, direction="prompt").inc(prompt)
    if output:
        GEMINI_TOKENS_TOTAL.labels(model=model, direction="output").inc(output)


def record_continuity_result(status: str) -> None:
    CONTINUITY_RESULTS.labels(status=status).inc()


def record_change_analysis(status: str) -> None:
    CHANGE_ANALYSIS_RESULTS.labels(status=status).inc()


def record_regeneration(outcome: str) -> None:
    REGENERATION_RUNS.labels(outcome=outcome).inc()


def get_metrics_payload() -> bytes:
    return generate_latest(registry)
