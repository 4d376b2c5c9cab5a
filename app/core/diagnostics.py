"""Process-wide diagnostic counters.

Observability state only: nothing reads these for correctness, and losing them
on restart is fine. All updates happen on the event loop thread without an
intervening await, so plain ints and a Counter are sufficient.
"""

import time
from collections import Counter

unknown_models: Counter[str] = Counter()
unknown_model_hits = 0
recording_failures = 0
extraction_failures = 0
pricing_refresh_failures = 0
started_at = time.time()


def record_unknown_model(model: str) -> None:
    global unknown_model_hits
    unknown_models[model] += 1
    unknown_model_hits += 1


def record_recording_failure() -> None:
    global recording_failures
    recording_failures += 1


def record_extraction_failure() -> None:
    global extraction_failures
    extraction_failures += 1


def record_pricing_refresh_failure() -> None:
    global pricing_refresh_failures
    pricing_refresh_failures += 1


def snapshot() -> dict:
    return {
        "unknown_models": dict(unknown_models),
        "unknown_model_hits": unknown_model_hits,
        "recording_failures": recording_failures,
        "extraction_failures": extraction_failures,
        "pricing_refresh_failures": pricing_refresh_failures,
        "uptime_seconds": int(time.time() - started_at),
    }


def reset() -> None:
    """Zero every counter (tests and admin resets)."""
    global unknown_model_hits, recording_failures, extraction_failures
    global pricing_refresh_failures
    unknown_models.clear()
    unknown_model_hits = 0
    recording_failures = 0
    extraction_failures = 0
    pricing_refresh_failures = 0
