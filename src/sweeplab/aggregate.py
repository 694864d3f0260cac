# Copyright (c) Syntropy Systems
"""Reduce scored tasks into batch statistics."""
from __future__ import annotations

import math
from collections import defaultdict
from typing import TYPE_CHECKING, Optional

from sweeplab.models import (
    METRIC_NAMES,
    BatchSummary,
    CombinationStats,
    GenerationTask,
    TaskStatus,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sweeplab.models import ParameterSpec


def pearson(xs: Sequence[float], ys: Sequence[float]) -> Optional[float]:
    """Pearson correlation coefficient.

    Returns None when it is undefined: fewer than two distinct x values or
    no variation in y.
    """
    if len(xs) != len(ys) or len(set(xs)) < 2:  # noqa: PLR2004
        return None
    n = len(xs)
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    cov = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    var_x = sum((x - mean_x) ** 2 for x in xs)
    var_y = sum((y - mean_y) ** 2 for y in ys)
    if var_x == 0 or var_y == 0:
        return None
    r = cov / math.sqrt(var_x * var_y)
    return max(-1.0, min(1.0, r))


def _overall(task: GenerationTask) -> float:
    return task.score.overall if task.score is not None else 0.0


def best_task(tasks: Iterable[GenerationTask]) -> Optional[GenerationTask]:
    """Task with the highest overall score.

    Ties go to the lowest iteration index, then the lowest combination index.
    """
    best: Optional[GenerationTask] = None
    for task in tasks:
        if best is None:
            best = task
            continue
        candidate = (-_overall(task), task.iteration_index, task.combination.index)
        current = (-_overall(best), best.iteration_index, best.combination.index)
        if candidate < current:
            best = task
    return best


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def combination_stats(tasks: Sequence[GenerationTask]) -> list[CombinationStats]:
    """Per-combination means, ordered by combination index."""
    groups: dict[int, list[GenerationTask]] = defaultdict(list)
    for task in tasks:
        groups[task.combination.index].append(task)

    stats: list[CombinationStats] = []
    for index in sorted(groups):
        group = groups[index]
        overalls = [_overall(t) for t in group]
        stats.append(
            CombinationStats(
                combination=group[0].combination,
                count=len(group),
                mean_overall=_mean(overalls),
                best_overall=max(overalls),
                metric_means=_metric_means(group),
            )
        )
    return stats


def _metric_means(tasks: Sequence[GenerationTask]) -> dict[str, float]:
    scored = [t.score for t in tasks if t.score is not None]
    if not scored:
        return {}
    return {name: _mean([getattr(s, name) for s in scored]) for name in METRIC_NAMES}


def summarize(
    batch_id: str,
    tasks: Iterable[GenerationTask],
    specs: Optional[Sequence[ParameterSpec]] = None,
) -> BatchSummary:
    """Summarize whatever tasks of a batch have succeeded so far.

    Safe to call mid-run and with no succeeded tasks, in which case the
    summary is empty rather than an error.
    """
    all_tasks = list(tasks)
    succeeded = [t for t in all_tasks if t.status == TaskStatus.SUCCEEDED]
    failed = sum(1 for t in all_tasks if t.status == TaskStatus.FAILED_FATAL)

    if specs is not None:
        param_names = [spec.name for spec in specs]
    else:
        param_names = []
        for task in all_tasks:
            for name in task.combination.keys():
                if name not in param_names:
                    param_names.append(name)

    summary = BatchSummary(
        batch_id=batch_id,
        total_tasks=len(all_tasks),
        succeeded=len(succeeded),
        failed=failed,
        correlations=dict.fromkeys(param_names),
    )
    if not succeeded:
        return summary

    overalls = [_overall(t) for t in succeeded]
    correlations: dict[str, Optional[float]] = {}
    for name in param_names:
        xs: list[float] = []
        ys: list[float] = []
        for task, overall in zip(succeeded, overalls):
            value = task.combination.get(name)
            if value is not None:
                xs.append(float(value))
                ys.append(overall)
        correlations[name] = pearson(xs, ys)

    per_combination = combination_stats(succeeded)
    best_combination = None
    for stats in per_combination:
        if best_combination is None or stats.mean_overall > best_combination.mean_overall:
            best_combination = stats

    summary.best = best_task(succeeded)
    summary.mean_overall = _mean(overalls)
    summary.metric_means = _metric_means(succeeded)
    summary.correlations = correlations
    summary.combinations = per_combination
    summary.best_combination = best_combination
    return summary
