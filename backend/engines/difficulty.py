"""Context-Sensitive Difficulty Model

An item's difficulty is not a constant: the same word is harder to produce in
speech under time pressure than to recognise in print. Offsets here are
additive on the logit scale so they compose with the IRT model directly.
"""
import math
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml

from core.logging import engine_logger

log = engine_logger()

Modality = Literal["reading", "listening", "speaking", "writing"]
G2PLayer = Literal["alphabetic", "syllable", "word"]
TaskCategory = Literal["recognition", "production"]

MODALITIES: tuple[Modality, ...] = ("reading", "listening", "speaking", "writing")
LAYERS: tuple[G2PLayer, ...] = ("alphabetic", "syllable", "word")

MODALITY_OFFSETS: dict[str, float] = {
    "reading": 0.0,
    "listening": 0.3,
    "writing": 0.4,
    "speaking": 0.6,
}

TASK_CATEGORY_OFFSETS: dict[str, float] = {
    "recognition": 0.0,
    "production": 0.5,
}

TIMED_OFFSET = 0.3

LAYER_OFFSETS: dict[str, float] = {
    "alphabetic": 0.0,
    "syllable": 0.2,
    "word": 0.4,
}

L1_TRANSFER_PATH = Path(__file__).parent / "data" / "l1_transfer.yaml"


@lru_cache
def load_l1_transfer(path: Path = L1_TRANSFER_PATH) -> dict[str, dict[str, float]]:
    """Load the (L1, pattern) -> offset table."""
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    table = {
        str(l1).lower(): {str(p): float(v) for p, v in (patterns or {}).items()}
        for l1, patterns in raw.items()
    }
    log.debug("l1_transfer_loaded", languages=len(table))
    return table


def difficulty_from_linguistic_score(score: float) -> float:
    """Map a [0, 1] linguistic difficulty score onto the logit scale."""
    p = min(0.99, max(0.01, score))
    return math.log(p / (1 - p))


def l1_offset(
    l1: str | None,
    pattern: str | None,
    table: dict[str, dict[str, float]] | None = None,
) -> float:
    if not l1 or not pattern:
        return 0.0
    table = load_l1_transfer() if table is None else table
    return table.get(l1.lower(), {}).get(pattern, 0.0)


def g2p_layer(metadata: dict) -> G2PLayer | None:
    """The grapheme-phoneme layer an object is practised at, from its ``g2p_layer`` metadata."""
    layer = metadata.get("g2p_layer")
    return layer if layer in LAYERS else None


def contextual_difficulty(
    base: float,
    modality: Modality | None = None,
    task_type: TaskCategory | None = None,
    timed: bool = False,
    layer: G2PLayer | None = None,
    l1: str | None = None,
    pattern: str | None = None,
    item_l1_offsets: dict[str, float] | None = None,
    l1_table: dict[str, dict[str, float]] | None = None,
) -> float:
    """Adjust a base logit difficulty for the presentation context.

    Unknown modalities, layers, L1s and patterns contribute nothing.
    """
    adjusted = base
    if modality is not None:
        adjusted += MODALITY_OFFSETS.get(modality, 0.0)
    if task_type is not None:
        adjusted += TASK_CATEGORY_OFFSETS.get(task_type, 0.0)
    if timed:
        adjusted += TIMED_OFFSET
    if layer is not None:
        adjusted += LAYER_OFFSETS.get(layer, 0.0)
    adjusted += l1_offset(l1, pattern, l1_table)
    if l1 and item_l1_offsets:
        adjusted += item_l1_offsets.get(l1.lower(), 0.0)
    return adjusted
