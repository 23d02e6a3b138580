"""Item Response Theory ability model.

Probability and information under the 1PL/2PL/3PL family, maximum-likelihood
and EAP ability estimation, adaptive item selection and EM item calibration.
Vectorised parts use numpy.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

from core.logging import engine_logger

log = engine_logger()

THETA_BOUNDS = (-4.0, 4.0)
A_BOUNDS = (0.2, 3.0)
B_BOUNDS = (-4.0, 4.0)


@dataclass(frozen=True, slots=True)
class ItemParameters:
    id: str
    difficulty: float
    discrimination: float = 1.0
    guessing: float = 0.0


@dataclass(frozen=True, slots=True)
class ThetaEstimate:
    theta: float
    standard_error: float
    iterations: int = 0
    converged: bool = True


@dataclass(frozen=True, slots=True)
class ItemCalibration:
    id: str
    discrimination: float
    difficulty: float
    se_discrimination: float
    se_difficulty: float


def _sigmoid(x: float) -> float:
    if x >= 0:
        z = math.exp(-x)
        return 1.0 / (1.0 + z)
    z = math.exp(x)
    return z / (1.0 + z)


def _clamp(value: float, bounds: tuple[float, float]) -> float:
    return max(bounds[0], min(bounds[1], value))


def probability(
    theta: float,
    difficulty: float,
    discrimination: float = 1.0,
    guessing: float = 0.0,
) -> float:
    """P(correct) under the 3PL model; 1PL and 2PL are special cases."""
    return guessing + (1.0 - guessing) * _sigmoid(discrimination * (theta - difficulty))


def item_probability(theta: float, item: ItemParameters) -> float:
    return probability(theta, item.difficulty, item.discrimination, item.guessing)


def _probability_array(theta, difficulty, discrimination, guessing=0.0):
    z = np.clip(discrimination * (theta - difficulty), -35.0, 35.0)
    return guessing + (1.0 - guessing) / (1.0 + np.exp(-z))


def fisher_information(theta: float, item: ItemParameters) -> float:
    """Fisher information of an item at theta.

    2PL: a^2 P Q, maximal where P = 0.5. With guessing the 3PL form applies.
    """
    a, c = item.discrimination, item.guessing
    p = item_probability(theta, item)
    q = 1.0 - p
    if c <= 0.0:
        return a * a * p * q
    if p <= 0.0:
        return 0.0
    return a * a * (q / p) * ((p - c) / (1.0 - c)) ** 2


def total_information(theta: float, items: Iterable[ItemParameters]) -> float:
    return sum(fisher_information(theta, item) for item in items)


def estimate_theta_mle(
    responses: Sequence[bool | int],
    items: Sequence[ItemParameters],
    max_iter: int = 50,
    tolerance: float = 0.001,
) -> ThetaEstimate:
    """Newton-Raphson maximum-likelihood estimate starting at theta = 0.

    All-correct or all-wrong patterns have no finite MLE; the estimate then
    settles at the theta bound.
    """
    if len(responses) != len(items):
        raise ValueError("responses and items must have the same length")
    if not items:
        return ThetaEstimate(0.0, math.inf, 0, False)

    theta = 0.0
    converged = False
    iterations = 0
    for iterations in range(1, max_iter + 1):
        first = 0.0
        second = 0.0
        for u, item in zip(responses, items):
            p = item_probability(theta, item)
            a = item.discrimination
            first += a * (float(u) - p)
            second -= a * a * p * (1.0 - p)
        if abs(second) < 1e-10:
            break
        delta = first / second
        theta = _clamp(theta - delta, THETA_BOUNDS)
        if abs(delta) < tolerance:
            converged = True
            break

    info = total_information(theta, items)
    se = 1.0 / math.sqrt(info) if info > 0 else math.inf
    return ThetaEstimate(theta, se, iterations, converged)


def _quadrature(prior_mean: float, prior_sd: float, points: int):
    nodes = prior_mean + prior_sd * 4.0 * (np.arange(points) / (points - 1) - 0.5)
    weights = np.exp(-0.5 * ((nodes - prior_mean) / prior_sd) ** 2)
    return nodes, weights


def estimate_theta_eap(
    responses: Sequence[bool | int],
    items: Sequence[ItemParameters],
    prior_mean: float = 0.0,
    prior_sd: float = 1.0,
    points: int = 41,
) -> ThetaEstimate:
    """Expected a posteriori estimate over a fixed quadrature grid."""
    nodes, prior = _quadrature(prior_mean, prior_sd, points)
    likelihood = np.ones_like(nodes)
    for u, item in zip(responses, items):
        p = _probability_array(nodes, item.difficulty, item.discrimination, item.guessing)
        likelihood *= p if u else (1.0 - p)

    posterior = likelihood * prior
    total = float(posterior.sum())
    if total <= 0.0 or not math.isfinite(total):
        return ThetaEstimate(prior_mean, prior_sd)

    theta = float((nodes * posterior).sum() / total)
    variance = float((((nodes - theta) ** 2) * posterior).sum() / total)
    return ThetaEstimate(theta, math.sqrt(variance))


def select_optimal_item(
    theta: float,
    items: Iterable[ItemParameters],
    used_ids: Iterable[str] = (),
) -> ItemParameters | None:
    """Unused item with maximum information at theta; ties go to the smaller id."""
    used = set(used_ids)
    candidates = [item for item in items if item.id not in used]
    if not candidates:
        return None
    return min(candidates, key=lambda it: (-fisher_information(theta, it), it.id))


def select_item_kl(
    theta: float,
    standard_error: float,
    items: Iterable[ItemParameters],
    used_ids: Iterable[str] = (),
    points: int = 21,
) -> ItemParameters | None:
    """Kullback-Leibler selection integrated over theta +/- 1.5 SE.

    More robust than point information early in a session, when the
    estimate is still uncertain.
    """
    if standard_error <= 0 or not math.isfinite(standard_error):
        return select_optimal_item(theta, items, used_ids)

    used = set(used_ids)
    eps = 1e-10
    best: ItemParameters | None = None
    best_kl = -math.inf
    for item in sorted(items, key=lambda it: it.id):
        if item.id in used:
            continue
        p0 = item_probability(theta, item)
        kl = 0.0
        for i in range(points):
            t = theta + standard_error * 3.0 * (i / (points - 1) - 0.5)
            p1 = item_probability(t, item)
            weight = math.exp(-0.5 * ((t - theta) / standard_error) ** 2)
            kl += weight * (
                p0 * math.log((p0 + eps) / (p1 + eps))
                + (1.0 - p0) * math.log((1.0 - p0 + eps) / (1.0 - p1 + eps))
            )
        if kl > best_kl:
            best, best_kl = item, kl
    return best


def calibrate_items(
    response_matrix,
    item_ids: Sequence[str] | None = None,
    max_iter: int = 100,
    tolerance: float = 0.001,
    points: int = 41,
) -> list[ItemCalibration]:
    """Estimate 2PL item parameters from a persons x items response matrix.

    Missing responses may be given as NaN. Each EM cycle computes EAP
    abilities for every person, then takes one ridge-regularised Newton step
    per item parameter.
    """
    R = np.asarray(response_matrix, dtype=float)
    if R.ndim != 2 or R.size == 0:
        raise ValueError("response_matrix must be a non-empty 2-D array")
    mask = ~np.isnan(R)
    U = np.nan_to_num(R)
    n_items = R.shape[1]
    ids = list(item_ids) if item_ids is not None else [str(i) for i in range(n_items)]
    if len(ids) != n_items:
        raise ValueError("item_ids length does not match matrix columns")

    a = np.ones(n_items)
    b = np.zeros(n_items)
    nodes, prior = _quadrature(0.0, 1.0, points)

    iteration = 0
    for iteration in range(1, max_iter + 1):
        # E-step: EAP ability for each person under current item parameters
        P_nodes = np.clip(_probability_array(nodes[:, None], b, a), 1e-9, 1 - 1e-9)
        loglik = (U * mask) @ np.log(P_nodes).T + ((1 - U) * mask) @ np.log(1 - P_nodes).T
        loglik -= loglik.max(axis=1, keepdims=True)
        posterior = np.exp(loglik) * prior
        thetas = (posterior @ nodes) / posterior.sum(axis=1)

        # M-step
        P = _probability_array(thetas[:, None], b, a)
        PQ = P * (1 - P) * mask
        resid = (U - P) * mask
        dt = thetas[:, None] - b

        grad_a = (resid * dt).sum(axis=0)
        hess_aa = -(PQ * dt ** 2).sum(axis=0)
        grad_b = (resid * -a).sum(axis=0)
        hess_bb = -(PQ * a ** 2).sum(axis=0)

        new_a = np.clip(a - grad_a / (hess_aa - 0.01), *A_BOUNDS)
        new_b = np.clip(b - grad_b / (hess_bb - 0.01), *B_BOUNDS)
        change = max(np.abs(new_a - a).max(), np.abs(new_b - b).max())
        a, b = new_a, new_b
        if change < tolerance:
            break

    P = _probability_array(thetas[:, None], b, a)
    PQ = P * (1 - P) * mask
    info_a = (PQ * (thetas[:, None] - b) ** 2).sum(axis=0)
    info_b = (PQ * a ** 2).sum(axis=0)

    log.info("items_calibrated", items=n_items, persons=R.shape[0], iterations=iteration)
    return [
        ItemCalibration(
            id=ids[j],
            discrimination=float(a[j]),
            difficulty=float(b[j]),
            se_discrimination=float(1 / math.sqrt(info_a[j])) if info_a[j] > 0 else math.inf,
            se_difficulty=float(1 / math.sqrt(info_b[j])) if info_b[j] > 0 else math.inf,
        )
        for j in range(n_items)
    ]
