from __future__ import annotations

from dataclasses import dataclass, field
from io import StringIO
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import OutlierConfig

RESULT_COLUMNS = [
    "ContestId",
    "Rank",
    "SampleId",
    "TrackingCode",
    "Category",
    "Participant",
    "AverageScore",
    "OriginalAverage",
    "Evaluations",
    "Outliers",
    "StdDev",
    "LatestEvaluation",
    "Awards",
]

MEDALS = {1: ["Gold Medal", "Best in Show"], 2: ["Silver Medal"], 3: ["Bronze Medal"]}


# -----------------------
# Outlier filtering
# -----------------------
@dataclass
class OutlierDetail:
    score: float
    id: Optional[str]
    deviation_from_mean: float
    was_filtered: bool
    applied_weight: float


@dataclass
class FilteredResult:
    filtered_average: float
    original_average: float
    total_count: int
    outlier_count: int
    standard_deviation: float
    mean: float
    details: List[OutlierDetail] = field(default_factory=list)


def filter_outliers(
    scores: Sequence[float],
    ids: Optional[Sequence[str]] = None,
    config: Optional[OutlierConfig] = None,
) -> FilteredResult:
    """
    Sigma-rule outlier filtering of one sample's judge scores.

    A score is an outlier when |score - mean| > sigma * std, with the sample
    standard deviation (n - 1). Outliers are dropped ("exclude") or
    down-weighted ("reduce_weight"). Nothing is filtered when filtering is
    disabled or there are fewer than `min_evaluations` scores.
    """
    cfg = config or OutlierConfig()
    values = np.asarray(list(scores), dtype=float)
    n = int(values.size)
    if ids is None:
        ids = [f"eval_{i}" for i in range(n)]
    if len(ids) != n:
        raise ValueError("ids and scores must have the same length.")

    mean = float(values.mean()) if n else 0.0
    std = float(values.std(ddof=1)) if n >= 2 else 0.0

    if not cfg.enabled or n < cfg.min_evaluations:
        weights = np.ones(n)
        flagged = np.zeros(n, dtype=bool)
    else:
        flagged = np.abs(values - mean) > cfg.sigma_threshold * std
        outlier_weight = 0.0 if cfg.strategy == "exclude" else cfg.weight_reduction_factor
        weights = np.where(flagged, outlier_weight, 1.0)

    total_weight = float(weights.sum())
    filtered = float((values * weights).sum() / total_weight) if total_weight > 0 else mean

    details = [
        OutlierDetail(
            score=float(v),
            id=ids[i],
            deviation_from_mean=float(v - mean),
            was_filtered=bool(flagged[i]),
            applied_weight=float(weights[i]),
        )
        for i, v in enumerate(values)
    ]
    return FilteredResult(
        filtered_average=filtered,
        original_average=mean,
        total_count=n,
        outlier_count=int(flagged.sum()),
        standard_deviation=std,
        mean=mean,
        details=details,
    )


def is_outlier(score: float, all_scores: Sequence[float], config: Optional[OutlierConfig] = None) -> bool:
    cfg = config or OutlierConfig()
    values = np.asarray(list(all_scores), dtype=float)
    if not cfg.enabled or values.size < cfg.min_evaluations:
        return False
    std = float(values.std(ddof=1)) if values.size >= 2 else 0.0
    return bool(abs(score - values.mean()) > cfg.sigma_threshold * std)


# -----------------------
# Aggregation -> ranking
# -----------------------
def awards_for_rank(rank: int) -> List[str]:
    return list(MEDALS.get(rank, []))


def aggregate_results(
    evaluations: pd.DataFrame,
    config: Optional[OutlierConfig] = None,
    top_n: int = 10,
) -> pd.DataFrame:
    """
    evaluations: one row per sensory sheet with columns
      evaluation_id, sample_id, contest_id, tracking_code, category,
      participant, overall_quality, verdict, evaluated_at

    Returns one row per sample (RESULT_COLUMNS), ranked within each contest.
    Only Approved sheets with a score count. Ordering: higher average first,
    then the more recent latest evaluation, then tracking code.
    """
    if evaluations.shape[0] == 0:
        raise ValueError("No sensory evaluations available.")

    df = evaluations.copy()
    df["overall_quality"] = pd.to_numeric(df["overall_quality"], errors="coerce")
    df = df[(df["verdict"] == "Approved") & df["overall_quality"].notna()]
    if df.shape[0] == 0:
        raise ValueError("No approved sensory evaluations to rank.")

    cfg = config or OutlierConfig()

    rows: List[Dict] = []
    for sample_id, group in df.groupby("sample_id", sort=False):
        first = group.iloc[0]
        filtered = filter_outliers(
            group["overall_quality"].tolist(),
            ids=[str(i) for i in group["evaluation_id"]],
            config=cfg,
        )
        rows.append(
            {
                "ContestId": first["contest_id"],
                "SampleId": sample_id,
                "TrackingCode": str(first["tracking_code"]),
                "Category": first["category"],
                "Participant": first["participant"],
                "AverageScore": filtered.filtered_average,
                "OriginalAverage": filtered.original_average,
                "Evaluations": filtered.total_count,
                "Outliers": filtered.outlier_count,
                "StdDev": filtered.standard_deviation,
                "LatestEvaluation": str(group["evaluated_at"].max()),
            }
        )

    results = pd.DataFrame(rows)
    results = results.sort_values(
        by=["ContestId", "AverageScore", "LatestEvaluation", "TrackingCode"],
        ascending=[True, False, False, True],
        kind="mergesort",
    ).reset_index(drop=True)

    results["Rank"] = results.groupby("ContestId").cumcount() + 1
    results = results[results["Rank"] <= top_n].reset_index(drop=True)
    results["Awards"] = [", ".join(awards_for_rank(int(r))) for r in results["Rank"]]
    return results[RESULT_COLUMNS]


def results_to_csv(results: pd.DataFrame) -> str:
    buf = StringIO()
    out = results.copy()
    for col in ("AverageScore", "OriginalAverage", "StdDev"):
        out[col] = out[col].round(2)
    out.to_csv(buf, index=False)
    return buf.getvalue()
