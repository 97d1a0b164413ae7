from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

import pandas as pd

from rollout_core.types import MetricSample

from .models import RolloutSession


REPORT_WINDOW = 10
METRIC_COLUMNS = ["error_rate", "response_time_ms", "throughput"]


def sample_frame(samples: Sequence[MetricSample]) -> pd.DataFrame:
    if not samples:
        return pd.DataFrame(columns=["timestamp", "source", *METRIC_COLUMNS])
    return pd.DataFrame([sample.to_dict() for sample in samples])


def summarize_samples(samples: Sequence[MetricSample], window: int = REPORT_WINDOW) -> dict[str, Any]:
    frame = sample_frame(samples).tail(max(1, window))
    if frame.empty:
        return {"samples": 0, "averages": None, "worst": None}
    metrics = frame[METRIC_COLUMNS].astype(float)
    return {
        "samples": int(len(frame)),
        "averages": {col: float(metrics[col].mean()) for col in METRIC_COLUMNS},
        "worst": {
            "error_rate": float(metrics["error_rate"].max()),
            "response_time_ms": float(metrics["response_time_ms"].max()),
            "throughput": float(metrics["throughput"].min()),
        },
    }


def samples_by_stage(samples: Sequence[MetricSample]) -> dict[str, dict[str, Any]]:
    frame = sample_frame(samples)
    if frame.empty:
        return {}
    grouped = frame.groupby("source", sort=False)[METRIC_COLUMNS].agg(["mean", "count"])
    out: dict[str, dict[str, Any]] = {}
    for source, row in grouped.iterrows():
        out[str(source)] = {
            "samples": int(row[("error_rate", "count")]),
            "error_rate": float(row[("error_rate", "mean")]),
            "response_time_ms": float(row[("response_time_ms", "mean")]),
            "throughput": float(row[("throughput", "mean")]),
        }
    return out


def build_report(session: RolloutSession, *, now: datetime | None = None) -> dict[str, Any]:
    end = session.finished_at or now or datetime.now(timezone.utc)
    summary = summarize_samples(session.samples)
    return {
        "deployment_id": session.id,
        "service_id": session.service_id,
        "version": session.version,
        "status": session.status.value,
        "reason": session.reason,
        "dry_run": session.dry_run,
        "stages": [
            {**stage.to_dict(), "completed": session.stage_completed(idx)}
            for idx, stage in enumerate(session.stages)
        ],
        "metrics": {
            "time_window": f"{summary['samples']} samples",
            "averages": summary["averages"],
            "worst": summary["worst"],
            "by_stage": samples_by_stage(session.samples),
            "latest": session.samples[-1].to_dict() if session.samples else None,
            "baseline": session.baseline.to_dict() if session.baseline else None,
        },
        "duration_sec": round(max(0.0, (end - session.created_at).total_seconds()), 3),
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
